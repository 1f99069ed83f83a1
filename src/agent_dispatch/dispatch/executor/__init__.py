"""Executor implementations."""

from agent_dispatch.dispatch.executor.base import (
    CancellationToken,
    ExecutionRequest,
    ExecutionResult,
    Executor,
)
from agent_dispatch.dispatch.executor.command_executor import CommandExecutor

__all__ = [
    "CancellationToken",
    "CommandExecutor",
    "ExecutionRequest",
    "ExecutionResult",
    "Executor",
]
