"""Executor interface for task attempts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from agent_dispatch.dispatch.models import ExecutionStatus, TaskCheckpoint


class CancellationToken:
    """Cooperative cancellation signal handed to executors."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.reason


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one task attempt."""

    task_type: str
    payload: bytes
    cancellation: CancellationToken
    deadline: datetime
    record_id: str
    delivery_count: int
    consumer_id: str
    correlation_id: str | None = None
    checkpoint: TaskCheckpoint | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Executor verdict for one attempt."""

    status: ExecutionStatus
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    checkpoint: TaskCheckpoint | None = None
    failure_details: dict[str, object] | None = None

    @classmethod
    def success(cls, data: dict[str, Any] | None = None) -> ExecutionResult:
        return cls(status=ExecutionStatus.SUCCESS, data=data or {})

    @classmethod
    def retryable(
        cls,
        error: str,
        *,
        checkpoint: TaskCheckpoint | None = None,
        failure_details: dict[str, object] | None = None,
    ) -> ExecutionResult:
        return cls(
            status=ExecutionStatus.RETRYABLE_FAILURE,
            error=error,
            checkpoint=checkpoint,
            failure_details=failure_details,
        )

    @classmethod
    def terminal(
        cls,
        error: str,
        *,
        failure_details: dict[str, object] | None = None,
    ) -> ExecutionResult:
        return cls(
            status=ExecutionStatus.TERMINAL_FAILURE,
            error=error,
            failure_details=failure_details,
        )


class Executor(Protocol):
    """Protocol implemented by task executors."""

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one attempt; should return promptly once the token is cancelled."""
