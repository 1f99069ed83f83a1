"""Errors raised by the dispatch core."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for errors raised by the dispatch core."""


class StorageUnavailable(DispatchError):
    """The log store could not be written; the caller decides whether to retry."""


class UnknownTaskType(DispatchError):
    """Task type is not present in the type registry."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type!r}")
        self.task_type = task_type


class PayloadValidationError(DispatchError):
    """Payload does not satisfy the registered schema for its task type."""

    def __init__(self, task_type: str, violations: list[str]) -> None:
        joined = "; ".join(violations)
        super().__init__(f"Payload rejected for task type {task_type!r}: {joined}")
        self.task_type = task_type
        self.violations = violations


class UnknownConsumerGroup(DispatchError):
    """Consumer group was never created on the partition."""

    def __init__(self, task_type: str, group_name: str) -> None:
        super().__init__(
            f"Consumer group {group_name!r} does not exist for task type {task_type!r}. "
            "Create it with ensure_group first.",
        )
        self.task_type = task_type
        self.group_name = group_name


class InvalidRecordId(DispatchError, ValueError):
    """Record id string cannot be parsed."""


class RegistryError(DispatchError, ValueError):
    """Task type registry definition is malformed."""
