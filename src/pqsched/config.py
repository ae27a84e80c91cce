from __future__ import annotations

import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable

from pqsched.logging import get_logger

_LOG = get_logger(__name__)

POLL_INTERVAL_BOUNDS_MS = (100, 60_000)
MAX_WORKERS_BOUNDS = (1, 128)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got: {raw!r}")


def _clamp(name: str, value: int, bounds: tuple[int, int]) -> int:
    lo, hi = bounds
    clamped = min(max(value, lo), hi)
    if clamped != value:
        _LOG.warning("%s=%d out of range [%d, %d]; using %d", name, value, lo, hi, clamped)
    return clamped


@dataclass(frozen=True)
class Settings:
    # Database
    db_path: Path

    # Scheduler loop (live-reloadable)
    poll_interval_ms: int
    max_concurrent_workers: int
    enabled: bool

    # Dispatch / execution
    start_timeout_ms: int
    claim_lock_ms: int
    process_timeout_s: int

    # Server (used by pqsched.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str

    @property
    def start_timeout_s(self) -> float:
        return self.start_timeout_ms / 1000.0


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Immutable snapshot of the knobs the scheduler loop reads every iteration.
    """
    poll_interval_ms: int = 5_000
    max_concurrent_workers: int = 4
    enabled: bool = True

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            poll_interval_ms=settings.poll_interval_ms,
            max_concurrent_workers=settings.max_concurrent_workers,
            enabled=settings.enabled,
        )


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - PQS_DB_PATH (default: ./var/tasks.db)
      - PQS_POLL_INTERVAL_MS (default: 5000, clamped to [100, 60000])
      - PQS_MAX_WORKERS (default: 4, clamped to [1, 128])
      - PQS_ENABLED (default: true)
      - PQS_START_TIMEOUT_MS (default: 10000)
      - PQS_CLAIM_LOCK_MS (default: 30000)
      - PQS_PROCESS_TIMEOUT_S (default: 0 = no timeout)
      - PQS_HOST (default: 127.0.0.1)
      - PQS_PORT (default: 8000)
      - PQS_LOG_LEVEL (default: info)
    """
    db_path = Path(_get_env_str("PQS_DB_PATH", "./var/tasks.db")).expanduser()

    poll_interval_ms = _clamp(
        "PQS_POLL_INTERVAL_MS", _get_env_int("PQS_POLL_INTERVAL_MS", 5_000), POLL_INTERVAL_BOUNDS_MS
    )
    max_workers = _clamp("PQS_MAX_WORKERS", _get_env_int("PQS_MAX_WORKERS", 4), MAX_WORKERS_BOUNDS)
    enabled = _get_env_bool("PQS_ENABLED", True)

    start_timeout_ms = _get_env_int("PQS_START_TIMEOUT_MS", 10_000)
    if start_timeout_ms <= 0:
        raise ValueError("PQS_START_TIMEOUT_MS must be > 0")

    claim_lock_ms = _get_env_int("PQS_CLAIM_LOCK_MS", 30_000)
    if claim_lock_ms <= 0:
        raise ValueError("PQS_CLAIM_LOCK_MS must be > 0")

    process_timeout_s = _get_env_int("PQS_PROCESS_TIMEOUT_S", 0)
    if process_timeout_s < 0:
        raise ValueError("PQS_PROCESS_TIMEOUT_S must be >= 0")

    host = _get_env_str("PQS_HOST", "127.0.0.1")
    port = _get_env_int("PQS_PORT", 8000)
    if not (1 <= port <= 65535):
        raise ValueError("PQS_PORT must be between 1 and 65535")

    log_level = _get_env_str("PQS_LOG_LEVEL", "info").lower()

    return Settings(
        db_path=db_path,
        poll_interval_ms=poll_interval_ms,
        max_concurrent_workers=max_workers,
        enabled=enabled,
        start_timeout_ms=start_timeout_ms,
        claim_lock_ms=claim_lock_ms,
        process_timeout_s=process_timeout_s,
        host=host,
        port=port,
        log_level=log_level,
    )


def _bounded(settings: Settings) -> Settings:
    """Clamps the loop knobs of settings that did not come through `load_settings`."""
    return replace(
        settings,
        poll_interval_ms=_clamp("poll_interval_ms", settings.poll_interval_ms, POLL_INTERVAL_BOUNDS_MS),
        max_concurrent_workers=_clamp("max_concurrent_workers", settings.max_concurrent_workers, MAX_WORKERS_BOUNDS),
    )


class ConfigProvider:
    """
    Thread-safe holder of the live settings.

    The scheduler calls `snapshot()` once per iteration and passes the result
    down explicitly; `reload()` (SIGHUP, API) swaps the settings atomically.
    Loop knobs are clamped when settings are stored, so snapshots are plain copies.
    """

    def __init__(self, loader: Callable[[], Settings] = load_settings) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._settings = _bounded(loader())

    @property
    def settings(self) -> Settings:
        with self._lock:
            return self._settings

    def snapshot(self) -> SchedulerConfig:
        return SchedulerConfig.from_settings(self.settings)

    def reload(self) -> SchedulerConfig:
        """
        Re-reads settings. Invalid values keep the previous settings in place.
        """
        try:
            fresh = self._loader()
        except ValueError:
            _LOG.exception("Config reload rejected; keeping previous settings.")
            return self.snapshot()

        with self._lock:
            if fresh.db_path != self._settings.db_path:
                _LOG.warning("PQS_DB_PATH cannot change at runtime; ignoring %s", fresh.db_path)
                fresh = replace(fresh, db_path=self._settings.db_path)
            self._settings = _bounded(fresh)

        snap = self.snapshot()
        _LOG.info(
            "Config reloaded: poll_interval_ms=%d max_workers=%d enabled=%s",
            snap.poll_interval_ms,
            snap.max_concurrent_workers,
            snap.enabled,
        )
        return snap

    def update(self, **changes: Any) -> SchedulerConfig:
        with self._lock:
            self._settings = _bounded(replace(self._settings, **changes))
        return self.snapshot()
