"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.registry import TaskTypeRegistry, TaskTypeSpec

REPO_SCHEMA = {
    "type": "object",
    "properties": {"repo": {"type": "string", "minLength": 1}},
    "required": ["repo"],
    "additionalProperties": False,
}


class FakeClock:
    """Manually advanced UTC clock; starts one millisecond after the epoch."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(1970, 1, 1, tzinfo=UTC) + timedelta(milliseconds=1)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, *, ms: int = 0, seconds: float = 0.0) -> None:
        with self._lock:
            self._now += timedelta(milliseconds=ms, seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def message_log(tmp_path: Path, clock: FakeClock) -> Iterator[MessageLog]:
    log = MessageLog(tmp_path / "dispatch.db", clock=clock, poll_interval_ms=5)
    log.init_schema()
    try:
        yield log
    finally:
        log.close()


@pytest.fixture()
def registry() -> TaskTypeRegistry:
    return TaskTypeRegistry(
        [
            TaskTypeSpec(task_type="drift-scan", payload_schema=REPO_SCHEMA),
            TaskTypeSpec(task_type="plan", payload_schema={"type": "object"}),
        ],
    )
