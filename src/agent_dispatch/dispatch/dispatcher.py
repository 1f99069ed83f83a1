"""Producer side: validate normalized tasks and append them to their partitions."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from uuid import uuid4

from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.message_log import MessageLog
from agent_dispatch.dispatch.models import NormalizedTask, RecordId
from agent_dispatch.dispatch.registry import TaskTypeRegistry, TaskTypeSpec
from agent_dispatch.errors import PayloadValidationError

logger = logging.getLogger(__name__)


class Dispatcher:
    """Routes trigger-agnostic tasks into the message log.

    Append failures propagate as ``StorageUnavailable``; retrying is the
    trigger's decision.
    """

    def __init__(
        self,
        *,
        log: MessageLog,
        registry: TaskTypeRegistry,
        events: LifecycleEventEmitter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.log = log
        self.registry = registry
        self.events = events
        self.sleep = sleep

    def dispatch(self, task: NormalizedTask) -> RecordId:
        spec = self._validate(task)
        return self._append(task, spec)

    def dispatch_batch(
        self,
        tasks: Sequence[NormalizedTask],
        stagger_ms: int = 0,
    ) -> list[RecordId]:
        """Validate the whole batch, then append in order with ``stagger_ms`` between appends.

        A rejected task rejects the batch before anything is appended.
        """

        if stagger_ms < 0:
            raise ValueError("stagger_ms must be >= 0")
        specs = [self._validate(task) for task in tasks]
        record_ids: list[RecordId] = []
        for index, (task, spec) in enumerate(zip(tasks, specs, strict=True)):
            if index > 0 and stagger_ms > 0:
                self.sleep(stagger_ms / 1000.0)
            record_ids.append(self._append(task, spec))
        logger.info("Dispatched batch of %d task(s), stagger %d ms", len(record_ids), stagger_ms)
        return record_ids

    def _validate(self, task: NormalizedTask) -> TaskTypeSpec:
        spec = self.registry.resolve(task.type)
        violations = spec.payload_violations(task.payload)
        if violations:
            raise PayloadValidationError(task.type, violations)
        return spec

    def _append(self, task: NormalizedTask, spec: TaskTypeSpec) -> RecordId:
        payload = json.dumps(task.payload, ensure_ascii=True, separators=(",", ":"))
        encoded = payload.encode("utf-8")
        correlation_id = task.correlation_id or uuid4().hex
        record_id = self.log.append(
            spec.task_type,
            encoded,
            task.priority,
            correlation_id=correlation_id,
        )
        logger.debug("Dispatched %s as %s to %s", task.type, record_id, spec.partition_key)
        if self.events is not None:
            self.events.emit(
                "dispatched",
                record_id=str(record_id),
                task_type=spec.task_type,
                correlation_id=correlation_id,
                details={"priority": task.priority, "partition_key": spec.partition_key},
            )
        return record_id
