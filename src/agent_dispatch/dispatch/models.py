"""Domain models for the dispatch log and task execution."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_dispatch.errors import InvalidRecordId

PARTITION_KEY_PREFIX = "dispatch:"

_RECORD_ID_PATTERN = re.compile(r"^(\d+)(?:-(\d+))?$")


def partition_key_for(task_type: str) -> str:
    """Storage key of the partition holding records of one task type."""

    return f"{PARTITION_KEY_PREFIX}{task_type}"


@dataclass(frozen=True, slots=True, order=True)
class RecordId:
    """Log-assigned record identifier, ordered by (milliseconds, sequence)."""

    ms: int
    seq: int = 0

    @classmethod
    def parse(cls, value: str) -> RecordId:
        match = _RECORD_ID_PATTERN.match(value.strip())
        if match is None:
            raise InvalidRecordId(f"Invalid record id: {value!r}. Expected '<ms>-<seq>'.")
        return cls(ms=int(match.group(1)), seq=int(match.group(2) or 0))

    def next_after(self, ms: int) -> RecordId:
        """Smallest id greater than this one that is not older than ``ms``."""

        if ms > self.ms:
            return RecordId(ms=ms, seq=0)
        return RecordId(ms=self.ms, seq=self.seq + 1)

    def __str__(self) -> str:
        return f"{self.ms}-{self.seq}"


ZERO_ID = RecordId(0, 0)


class ExecutionStatus(str, Enum):
    """Executor verdict for one attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


class AttemptState(str, Enum):
    """Per-attempt worker state machine."""

    CLAIMED = "claimed"
    EXECUTING = "executing"
    ACKED = "acked"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class OutcomeStatus(str, Enum):
    """Terminal outcome recorded for an acknowledged record."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by the redelivery policy."""

    TIMEOUT = "timeout"
    EXECUTOR_TRANSIENT = "executor_transient"
    EXECUTOR_NON_RETRYABLE = "executor_non_retryable"
    ACCESS_OR_AUTH = "access_or_auth"
    DELIVERIES_EXHAUSTED = "deliveries_exhausted"


@dataclass(frozen=True, slots=True)
class TaskRecord:
    """Immutable unit of dispatch stored in a partition."""

    id: RecordId
    task_type: str
    payload: bytes
    dispatched_at: datetime
    priority: int = 100
    correlation_id: str | None = None


@dataclass(slots=True)
class PendingEntry:
    """In-flight delivery that has not been acknowledged yet."""

    record_id: RecordId
    consumer_id: str
    claimed_at: datetime
    delivery_count: int
    idle_ms: int = 0


@dataclass(slots=True)
class ConsumerGroupView:
    """Readable consumer group cursor."""

    task_type: str
    group_name: str
    last_delivered_id: RecordId
    acked_count: int
    created_at: datetime


@dataclass(slots=True)
class ConsumerHeartbeat:
    """Advisory liveness signal with expiry."""

    consumer_id: str
    last_seen_at: datetime
    ttl_seconds: int

    def is_alive(self, now: datetime) -> bool:
        return (now - self.last_seen_at).total_seconds() <= self.ttl_seconds


@dataclass(slots=True)
class PartitionView:
    """Readable partition head."""

    partition_key: str
    task_type: str
    last_id: RecordId
    appended_count: int
    created_at: datetime


@dataclass(slots=True)
class GroupAccounting:
    """Per-group record accounting: acked + pending + undelivered == appended."""

    group_name: str
    acked: int
    pending: int
    undelivered: int

    @property
    def total(self) -> int:
        return self.acked + self.pending + self.undelivered


@dataclass(slots=True)
class PartitionStats:
    """Partition totals with accounting for each of its consumer groups."""

    task_type: str
    partition_key: str
    appended: int
    groups: list[GroupAccounting] = field(default_factory=list)


@dataclass(slots=True)
class NormalizedTask:
    """Trigger-agnostic task request accepted by the dispatcher."""

    type: str
    payload: dict[str, Any]
    priority: int = 100
    correlation_id: str | None = None


@dataclass(slots=True)
class Subscription:
    """One (task type, consumer group) pair served by a worker runtime."""

    task_type: str
    group_name: str


@dataclass(slots=True)
class TaskCheckpoint:
    """Serializable state of a suspended task, resumable by any worker."""

    state: dict[str, Any]
    workdir_ref: str | None = None


@dataclass(slots=True)
class TaskOutcomeView:
    """Stored terminal outcome."""

    id: int
    record_id: str
    task_type: str
    status: OutcomeStatus
    detail: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class DispatchEventView:
    """Lifecycle event entry for the audit trail."""

    event_id: int
    event_type: str
    record_id: str | None
    task_type: str | None
    consumer_id: str | None
    correlation_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
