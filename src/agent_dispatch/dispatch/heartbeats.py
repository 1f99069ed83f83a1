"""Advisory consumer liveness records."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import ConsumerHeartbeat
from agent_dispatch.storage.common import (
    storage_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import ConsumerHeartbeatRow


class HeartbeatStore:
    """Upserts and reads ``consumer_heartbeats`` rows; one row per live consumer."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def beat(self, consumer_id: str, ttl_seconds: int) -> ConsumerHeartbeat:
        now = self.clock()
        statement = sqlite_insert(ConsumerHeartbeatRow).values(
            consumer_id=consumer_id,
            last_seen_at=to_db_datetime(now),
            ttl_seconds=ttl_seconds,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["consumer_id"],
            set_={
                "last_seen_at": statement.excluded.last_seen_at,
                "ttl_seconds": statement.excluded.ttl_seconds,
            },
        )
        with storage_errors("heartbeat"), Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        return ConsumerHeartbeat(
            consumer_id=consumer_id,
            last_seen_at=now,
            ttl_seconds=ttl_seconds,
        )

    def get(self, consumer_id: str) -> ConsumerHeartbeat | None:
        with storage_errors("get_heartbeat"), Session(self.engine) as session:
            row = session.exec(
                select(ConsumerHeartbeatRow).where(
                    ConsumerHeartbeatRow.consumer_id == consumer_id,
                ),
            ).one_or_none()
        return _to_heartbeat(row) if row is not None else None

    def list_all(self) -> list[ConsumerHeartbeat]:
        with storage_errors("list_heartbeats"), Session(self.engine) as session:
            rows = session.exec(
                select(ConsumerHeartbeatRow).order_by(col(ConsumerHeartbeatRow.consumer_id).asc()),
            ).all()
        return [_to_heartbeat(row) for row in rows]

    def is_alive(self, consumer_id: str) -> bool:
        heartbeat = self.get(consumer_id)
        return heartbeat is not None and heartbeat.is_alive(self.clock())

    def remove(self, consumer_id: str) -> bool:
        """Drop the consumer's row on clean shutdown."""

        with storage_errors("remove_heartbeat"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(ConsumerHeartbeatRow).where(
                    col(ConsumerHeartbeatRow.consumer_id) == consumer_id,
                ),
            )
            session.commit()
            return result.rowcount == 1


def _to_heartbeat(row: ConsumerHeartbeatRow) -> ConsumerHeartbeat:
    return ConsumerHeartbeat(
        consumer_id=row.consumer_id,
        last_seen_at=to_utc_aware_datetime(row.last_seen_at),
        ttl_seconds=row.ttl_seconds,
    )
