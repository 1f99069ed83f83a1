"""Runtime configuration loaded from AGENT_DISPATCH_* environment variables."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class StorageSettings:
    """SQLite log store settings."""

    sqlite_busy_timeout_ms: int = 5_000
    poll_interval_ms: int = 100


@dataclass(slots=True)
class DispatchSettings:
    """Producer-side settings."""

    stagger_ms: int = 0


@dataclass(slots=True)
class WorkerSettings:
    """Worker runtime settings."""

    consumer_id: str = ""
    group_name: str = "workers"
    task_types: tuple[str, ...] = ()
    max_concurrency: int = 4
    block_ms: int = 5_000
    min_idle_ms: int = 900_000
    max_deliveries: int = 10
    heartbeat_interval_seconds: float = 30.0
    heartbeat_ttl_seconds: int = 90
    reclaim_interval_seconds: float = 60.0
    cancel_grace_seconds: float = 5.0


@dataclass(slots=True)
class WatchdogSettings:
    """Advisory watchdog settings."""

    interval_seconds: float = 60.0
    stale_after_ms: int = 900_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(".agent_dispatch.db")
    registry_path: Path = Path("task_types.yaml")
    log_level: str = "INFO"
    storage: StorageSettings = field(default_factory=StorageSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_DISPATCH_DB_PATH", ".agent_dispatch.db")),
            registry_path=Path(os.getenv("AGENT_DISPATCH_REGISTRY_PATH", "task_types.yaml")),
            log_level=os.getenv("AGENT_DISPATCH_LOG_LEVEL", "INFO").strip().upper(),
            storage=StorageSettings(
                sqlite_busy_timeout_ms=_env_int("AGENT_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", 5_000),
                poll_interval_ms=_env_int("AGENT_DISPATCH_POLL_INTERVAL_MS", 100),
            ),
            dispatch=DispatchSettings(
                stagger_ms=_env_int("AGENT_DISPATCH_STAGGER_MS", 0),
            ),
            worker=WorkerSettings(
                consumer_id=os.getenv("AGENT_DISPATCH_CONSUMER_ID", "").strip()
                or default_consumer_id(),
                group_name=os.getenv("AGENT_DISPATCH_GROUP", "workers").strip(),
                task_types=_env_csv("AGENT_DISPATCH_TASK_TYPES"),
                max_concurrency=_env_int("AGENT_DISPATCH_MAX_CONCURRENCY", 4),
                block_ms=_env_int("AGENT_DISPATCH_BLOCK_MS", 5_000),
                min_idle_ms=_env_int("AGENT_DISPATCH_MIN_IDLE_MS", 900_000),
                max_deliveries=_env_int("AGENT_DISPATCH_MAX_DELIVERIES", 10),
                heartbeat_interval_seconds=_env_float(
                    "AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS",
                    30.0,
                ),
                heartbeat_ttl_seconds=_env_int("AGENT_DISPATCH_HEARTBEAT_TTL_SECONDS", 90),
                reclaim_interval_seconds=_env_float(
                    "AGENT_DISPATCH_RECLAIM_INTERVAL_SECONDS",
                    60.0,
                ),
                cancel_grace_seconds=_env_float("AGENT_DISPATCH_CANCEL_GRACE_SECONDS", 5.0),
            ),
            watchdog=WatchdogSettings(
                interval_seconds=_env_float("AGENT_DISPATCH_WATCHDOG_INTERVAL_SECONDS", 60.0),
                stale_after_ms=_env_int("AGENT_DISPATCH_WATCHDOG_STALE_AFTER_MS", 900_000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"AGENT_DISPATCH_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.storage.poll_interval_ms <= 0:
            raise ValueError("AGENT_DISPATCH_POLL_INTERVAL_MS must be > 0.")
        if self.dispatch.stagger_ms < 0:
            raise ValueError("AGENT_DISPATCH_STAGGER_MS must be >= 0.")
        self.validate_for_worker()
        if self.watchdog.interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_WATCHDOG_INTERVAL_SECONDS must be > 0.")
        if self.watchdog.stale_after_ms < 0:
            raise ValueError("AGENT_DISPATCH_WATCHDOG_STALE_AFTER_MS must be >= 0.")

    def validate_for_worker(self) -> None:
        worker = self.worker
        if not worker.consumer_id:
            raise ValueError("AGENT_DISPATCH_CONSUMER_ID must not be empty.")
        if not worker.group_name:
            raise ValueError("AGENT_DISPATCH_GROUP must not be empty.")
        if worker.max_concurrency <= 0:
            raise ValueError("AGENT_DISPATCH_MAX_CONCURRENCY must be > 0.")
        if worker.block_ms < 0:
            raise ValueError("AGENT_DISPATCH_BLOCK_MS must be >= 0.")
        if worker.min_idle_ms < 0:
            raise ValueError("AGENT_DISPATCH_MIN_IDLE_MS must be >= 0.")
        if worker.max_deliveries <= 0:
            raise ValueError("AGENT_DISPATCH_MAX_DELIVERIES must be > 0.")
        if worker.heartbeat_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if worker.heartbeat_ttl_seconds < worker.heartbeat_interval_seconds:
            raise ValueError(
                "AGENT_DISPATCH_HEARTBEAT_TTL_SECONDS must be >= "
                "AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if worker.reclaim_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_RECLAIM_INTERVAL_SECONDS must be > 0.")
        if worker.cancel_grace_seconds < 0:
            raise ValueError("AGENT_DISPATCH_CANCEL_GRACE_SECONDS must be >= 0.")


def default_consumer_id() -> str:
    """Host-and-process consumer id, unique per running worker."""

    return f"{socket.gethostname()}-{os.getpid()}"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)
