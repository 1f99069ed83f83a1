"""Consumer group lifecycle and idle-gated reclaim of abandoned work."""

from __future__ import annotations

import logging

from agent_dispatch.dispatch.events import LifecycleEventEmitter
from agent_dispatch.dispatch.message_log import START_FROM_BEGINNING, MessageLog
from agent_dispatch.dispatch.models import TaskRecord

logger = logging.getLogger(__name__)


class ConsumerGroupCoordinator:
    """Creates consumer groups and moves abandoned pending entries to live consumers."""

    def __init__(
        self,
        *,
        log: MessageLog,
        events: LifecycleEventEmitter | None = None,
    ) -> None:
        self.log = log
        self.events = events

    def ensure_group(
        self,
        task_type: str,
        group_name: str,
        start_id: str = START_FROM_BEGINNING,
    ) -> bool:
        """Create the group if missing; ``False`` signals it already existed."""

        created = self.log.create_group(task_type, group_name, start_id)
        if created:
            logger.info(
                "Created consumer group %s on %s starting at %s",
                group_name,
                task_type,
                start_id,
            )
        else:
            logger.debug("Consumer group %s on %s already exists", group_name, task_type)
        return created

    def recover_abandoned(
        self,
        task_type: str,
        group_name: str,
        consumer_id: str,
        min_idle_ms: int,
        *,
        limit: int | None = None,
    ) -> list[TaskRecord]:
        """Claim every entry idle at least ``min_idle_ms``, oldest first.

        Entries that another consumer claims (or acks) between the listing and
        our claim are skipped.
        """

        if limit is not None and limit <= 0:
            return []
        candidates = self.log.list_pending(task_type, group_name, min_idle_ms)
        recovered: list[TaskRecord] = []
        for entry in candidates:
            if limit is not None and len(recovered) >= limit:
                break
            record = self.log.claim(
                task_type,
                group_name,
                consumer_id,
                entry.record_id,
                min_idle_ms,
            )
            if record is None:
                logger.debug(
                    "Skipped reclaim of %s on %s/%s: entry moved",
                    entry.record_id,
                    task_type,
                    group_name,
                )
                continue
            recovered.append(record)
            if self.events is not None:
                self.events.emit(
                    "reclaimed",
                    record_id=str(record.id),
                    task_type=task_type,
                    consumer_id=consumer_id,
                    correlation_id=record.correlation_id,
                    details={
                        "group": group_name,
                        "previous_consumer": entry.consumer_id,
                        "idle_ms": entry.idle_ms,
                        "delivery_count": entry.delivery_count + 1,
                    },
                )
        if recovered:
            logger.info(
                "Recovered %d abandoned record(s) on %s/%s for %s",
                len(recovered),
                task_type,
                group_name,
                consumer_id,
            )
        return recovered
