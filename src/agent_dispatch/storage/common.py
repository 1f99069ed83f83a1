"""SQLite engine setup and shared storage helpers."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

from agent_dispatch.errors import StorageUnavailable


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC, the representation SQLite round-trips."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    """Attach UTC to naive values read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def epoch_ms(value: datetime) -> int:
    """Milliseconds since the Unix epoch for an aware or naive-UTC datetime."""

    return int(to_utc_aware_datetime(value).timestamp() * 1000)


def build_sqlite_engine(
    *,
    db_path: Path,
    busy_timeout_ms: int,
    immediate_transactions: bool = False,
) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy.

    With ``immediate_transactions`` every transaction starts with
    ``BEGIN IMMEDIATE``: the write lock is taken up front, so a
    read-then-update sequence never fails with a stale WAL snapshot and
    concurrent writers wait on ``busy_timeout`` instead.
    """

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        if immediate_transactions:
            dbapi_connection.isolation_level = None
        _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    def _on_begin(connection: Connection) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    event.listen(engine, "connect", _on_connect)
    if immediate_transactions:
        event.listen(engine, "begin", _on_begin)
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    pragmas = (
        "journal_mode = WAL",
        f"busy_timeout = {max(1, busy_timeout_ms)}",
        "foreign_keys = ON",
    )
    cursor = dbapi_connection.cursor()
    try:
        for pragma in pragmas:
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Surface SQLite operational failures as ``StorageUnavailable``."""

    try:
        yield
    except OperationalError as error:
        raise StorageUnavailable(f"Storage {operation} failed: {error}") from error
