"""Persisted checkpoints of suspended tasks, resumable by any worker."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import TaskCheckpoint, partition_key_for
from agent_dispatch.storage.common import storage_errors, to_db_datetime, utc_now
from agent_dispatch.storage.sqlmodel_models import TaskCheckpointRow


class CheckpointStore:
    """Stores one checkpoint per (partition, record); the latest save wins."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def save(
        self,
        task_type: str,
        record_id: str,
        checkpoint: TaskCheckpoint,
        *,
        saved_by: str | None = None,
    ) -> None:
        statement = sqlite_insert(TaskCheckpointRow).values(
            partition_key=partition_key_for(task_type),
            record_id=record_id,
            state_json=json.dumps(checkpoint.state, ensure_ascii=True, sort_keys=True),
            workdir_ref=checkpoint.workdir_ref,
            saved_by=saved_by,
            updated_at=to_db_datetime(self.clock()),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["partition_key", "record_id"],
            set_={
                "state_json": statement.excluded.state_json,
                "workdir_ref": statement.excluded.workdir_ref,
                "saved_by": statement.excluded.saved_by,
                "updated_at": statement.excluded.updated_at,
            },
        )
        with storage_errors("save_checkpoint"), Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def load(self, task_type: str, record_id: str) -> TaskCheckpoint | None:
        with storage_errors("load_checkpoint"), Session(self.engine) as session:
            row = session.exec(
                select(TaskCheckpointRow).where(
                    TaskCheckpointRow.partition_key == partition_key_for(task_type),
                    TaskCheckpointRow.record_id == record_id,
                ),
            ).one_or_none()
        if row is None:
            return None
        return TaskCheckpoint(state=json.loads(row.state_json), workdir_ref=row.workdir_ref)

    def delete(self, task_type: str, record_id: str) -> bool:
        with storage_errors("delete_checkpoint"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskCheckpointRow).where(
                    col(TaskCheckpointRow.partition_key) == partition_key_for(task_type),
                    col(TaskCheckpointRow.record_id) == record_id,
                ),
            )
            session.commit()
            return result.rowcount == 1
