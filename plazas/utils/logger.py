"""Logging setup shared by the API, the engine and the background processor."""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

from plazas.utils.config import get_settings


HANDLER_NAME = "plazas-console"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"


def _console_handler() -> Optional[logging.Handler]:
    for handler in logging.getLogger().handlers:
        if handler.get_name() == HANDLER_NAME:
            return handler
    return None


def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    """Install the console handler on the root logger, or retune the one already there.

    Passes run on the request threadpool and on the background processor
    thread at the same time, so every line carries its thread name next to
    the pipe-separated `key=value` message.
    """
    root = logging.getLogger()
    handler = _console_handler()
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    elif stream is not None:
        handler.setStream(stream)
    root.setLevel((level or get_settings().log_level).upper())
    return handler


def get_logger(name: str) -> logging.Logger:
    if _console_handler() is None:
        configure_logging()
    return logging.getLogger(name)
