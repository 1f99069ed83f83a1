"""Outcome store collaborator and its default SQLite implementation."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import OutcomeStatus, TaskOutcomeView
from agent_dispatch.storage.common import (
    storage_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import TaskOutcomeRow


class OutcomeStore(Protocol):
    """Receives the terminal outcome of every acknowledged record."""

    def record_outcome(
        self,
        record_id: str,
        task_type: str,
        status: OutcomeStatus,
        detail: dict[str, Any],
    ) -> None: ...


class SqlOutcomeStore:
    """Appends outcome rows to ``task_outcomes``."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def record_outcome(
        self,
        record_id: str,
        task_type: str,
        status: OutcomeStatus,
        detail: dict[str, Any],
    ) -> None:
        with storage_errors("record_outcome"), Session(self.engine) as session:
            session.add(
                TaskOutcomeRow(
                    record_id=record_id,
                    task_type=task_type,
                    status=OutcomeStatus(status).value,
                    detail_json=json.dumps(detail, ensure_ascii=True, default=str),
                    created_at=to_db_datetime(self.clock()),
                ),
            )
            session.commit()

    def list_outcomes(
        self,
        *,
        task_type: str | None = None,
        status: OutcomeStatus | None = None,
        limit: int = 100,
    ) -> list[TaskOutcomeView]:
        """Stored outcomes, newest first."""

        with storage_errors("list_outcomes"), Session(self.engine) as session:
            statement = select(TaskOutcomeRow)
            if task_type is not None:
                statement = statement.where(TaskOutcomeRow.task_type == task_type)
            if status is not None:
                statement = statement.where(TaskOutcomeRow.status == OutcomeStatus(status).value)
            rows = session.exec(
                statement.order_by(col(TaskOutcomeRow.id).desc()).limit(limit),
            ).all()
        return [
            TaskOutcomeView(
                id=row.id or 0,
                record_id=row.record_id,
                task_type=row.task_type,
                status=OutcomeStatus(row.status),
                detail=json.loads(row.detail_json) if row.detail_json else {},
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]
