"""Periodic incremental passes, driven from outside the engine."""

from __future__ import annotations

import threading
from typing import Optional

from plazas.domain.models import Summary
from plazas.repository.data_repository import StoreUnavailableError
from plazas.services.allocation_service import AllocationEngine
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


class BackgroundProcessor:
    """Daemon thread that calls `process_pending()` every `interval_seconds`."""

    def __init__(self, engine: AllocationEngine, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.completed_passes = 0
        self.failed_passes = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="plazas-background-processor",
            daemon=True,
        )
        self._thread.start()
        logger.info("Background processor started | interval_seconds=%s", self._interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._shutdown_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info(
            "Background processor stopped | completed=%s | failed=%s",
            self.completed_passes,
            self.failed_passes,
        )

    def run_once(self) -> Optional[Summary]:
        """Run one pass; a store outage is logged and the loop keeps going."""
        try:
            summary = self._engine.process_pending()
        except StoreUnavailableError:
            self.failed_passes += 1
            logger.exception("Background pass failed: store unavailable")
            return None
        self.completed_passes += 1
        return summary

    def _loop(self) -> None:
        while not self._shutdown_event.wait(timeout=self._interval_seconds):
            try:
                self.run_once()
            except Exception:
                self.failed_passes += 1
                logger.exception("Background pass crashed; next pass in %ss", self._interval_seconds)
