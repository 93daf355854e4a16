"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


_ENV_PREFIX = "PLAZAS_"
_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "1" if default else "0")
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    database_busy_timeout_seconds: float
    coordinator_max_attempts: int
    coordinator_backoff_base_seconds: float
    coordinator_backoff_cap_seconds: float
    background_interval_seconds: float
    seed_demo_data: bool
    demo_request_count: int
    synthetic_random_seed: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; call `cache_clear()` to reload."""
    return Settings(
        app_name=_env("APP_NAME", "Plaza Allocation Service"),
        app_version=_env("APP_VERSION", "1.0.0"),
        log_level=_env("LOG_LEVEL", "INFO"),
        database_path=Path(_env("DATABASE_PATH", str(_PROJECT_ROOT / "data" / "plazas.db"))),
        database_busy_timeout_seconds=_env_float("DATABASE_BUSY_TIMEOUT_SECONDS", 5.0),
        coordinator_max_attempts=_env_int("COORDINATOR_MAX_ATTEMPTS", 3),
        coordinator_backoff_base_seconds=_env_float("COORDINATOR_BACKOFF_BASE_SECONDS", 0.1),
        coordinator_backoff_cap_seconds=_env_float("COORDINATOR_BACKOFF_CAP_SECONDS", 0.7),
        background_interval_seconds=_env_float("BACKGROUND_INTERVAL_SECONDS", 0.0),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", False),
        demo_request_count=_env_int("DEMO_REQUEST_COUNT", 40),
        synthetic_random_seed=_env_int("SYNTHETIC_RANDOM_SEED", 42),
    )
