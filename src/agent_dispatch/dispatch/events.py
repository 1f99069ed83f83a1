"""Lifecycle events: structured log lines plus a persisted audit trail."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import DispatchEventView
from agent_dispatch.storage.common import (
    storage_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import DispatchEventRow

logger = logging.getLogger(__name__)

EVENT_TYPES: frozenset[str] = frozenset(
    {
        "claimed",
        "started",
        "heartbeat",
        "acked",
        "redundant_ack",
        "reclaimed",
        "failed_retryable",
        "failed_terminal",
        "timeout",
        "dispatched",
        "stale_pending",
        "consumer_dead",
    },
)
_NOT_PERSISTED: frozenset[str] = frozenset({"heartbeat"})
_WARNING_EVENTS: frozenset[str] = frozenset(
    {"failed_terminal", "timeout", "redundant_ack", "stale_pending", "consumer_dead"},
)


class LifecycleEventEmitter:
    """Emits lifecycle events to ``logging`` and stores them in ``dispatch_events``.

    Heartbeats are logged only; persisting them would grow the table with
    every tick of every worker.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.clock = clock

    def emit(  # noqa: PLR0913
        self,
        event_type: str,
        *,
        record_id: str | None = None,
        task_type: str | None = None,
        consumer_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown lifecycle event type: {event_type}")
        payload = details or {}
        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        if event_type in _NOT_PERSISTED:
            level = logging.DEBUG
        logger.log(
            level,
            "event=%s record=%s type=%s consumer=%s correlation=%s details=%s",
            event_type,
            record_id,
            task_type,
            consumer_id,
            correlation_id,
            json.dumps(payload, sort_keys=True, default=str),
        )
        if self.engine is None or event_type in _NOT_PERSISTED:
            return
        with storage_errors("emit_event"), Session(self.engine) as session:
            session.add(
                DispatchEventRow(
                    event_type=event_type,
                    record_id=record_id,
                    task_type=task_type,
                    consumer_id=consumer_id,
                    correlation_id=correlation_id,
                    details_json=json.dumps(payload, ensure_ascii=True, default=str),
                    created_at=to_db_datetime(self.clock()),
                ),
            )
            session.commit()

    def list_events(
        self,
        *,
        record_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[DispatchEventView]:
        """Stored events, oldest first."""

        if self.engine is None:
            return []
        with storage_errors("list_events"), Session(self.engine) as session:
            statement = select(DispatchEventRow)
            if record_id is not None:
                statement = statement.where(DispatchEventRow.record_id == record_id)
            if event_type is not None:
                statement = statement.where(DispatchEventRow.event_type == event_type)
            rows = session.exec(
                statement.order_by(col(DispatchEventRow.id).asc()).limit(limit),
            ).all()
        return [
            DispatchEventView(
                event_id=row.id or 0,
                event_type=row.event_type,
                record_id=row.record_id,
                task_type=row.task_type,
                consumer_id=row.consumer_id,
                correlation_id=row.correlation_id,
                created_at=to_utc_aware_datetime(row.created_at),
                details=json.loads(row.details_json) if row.details_json else {},
            )
            for row in rows
        ]
