"""Partitioned append-only message log with grouped consumption, backed by SQLite."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import (
    ZERO_ID,
    ConsumerGroupView,
    GroupAccounting,
    PartitionStats,
    PartitionView,
    PendingEntry,
    RecordId,
    TaskRecord,
    partition_key_for,
)
from agent_dispatch.errors import UnknownConsumerGroup
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    epoch_ms,
    storage_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import (
    LogConsumerGroup,
    LogPartition,
    LogPendingEntry,
    LogRecord,
)

logger = logging.getLogger(__name__)

START_FROM_BEGINNING = "0"
START_FROM_LATEST = "$"


class MessageLog:
    """Durable, ordered, partitioned log with consumer groups and pending entries.

    Every mutation runs in an immediate SQLite transaction and is additionally
    guarded by a compare-and-swap ``UPDATE ... WHERE`` on the state it read, so
    concurrent workers (threads or processes) resolve races deterministically.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        sqlite_busy_timeout_ms: int = 5_000,
        poll_interval_ms: int = 100,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.poll_interval_seconds = max(0.001, poll_interval_ms / 1000.0)
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
            immediate_transactions=True,
        )
        self._appended = threading.Condition()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.wake_readers()
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self.clock()

    def wake_readers(self) -> None:
        """Wake in-process readers blocked in ``read_new``."""

        with self._appended:
            self._appended.notify_all()

    def append(
        self,
        task_type: str,
        payload: bytes,
        priority: int = 100,
        *,
        correlation_id: str | None = None,
    ) -> RecordId:
        """Append one record to the task type's partition, creating it on demand."""

        key = partition_key_for(task_type)
        with storage_errors("append"):
            while True:
                now = self.clock()
                with Session(self.engine) as session:
                    self._ensure_partition(session=session, task_type=task_type, now=now)
                    partition = session.exec(
                        select(LogPartition).where(LogPartition.partition_key == key),
                    ).one()
                    last_id = RecordId(partition.last_id_ms, partition.last_id_seq)
                    record_id = last_id.next_after(epoch_ms(now))
                    result = session.exec(
                        sa_update(LogPartition)
                        .where(
                            col(LogPartition.partition_key) == key,
                            col(LogPartition.last_id_ms) == last_id.ms,
                            col(LogPartition.last_id_seq) == last_id.seq,
                        )
                        .values(
                            last_id_ms=record_id.ms,
                            last_id_seq=record_id.seq,
                            appended_count=LogPartition.appended_count + 1,
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.add(
                        LogRecord(
                            partition_key=key,
                            id_ms=record_id.ms,
                            id_seq=record_id.seq,
                            record_id=str(record_id),
                            task_type=task_type,
                            payload=payload,
                            priority=priority,
                            correlation_id=correlation_id,
                            dispatched_at=to_db_datetime(now),
                        ),
                    )
                    session.commit()
                    break

        self.wake_readers()
        logger.debug("Appended record %s to %s", record_id, key)
        return record_id

    def create_group(self, task_type: str, group_name: str, start_id: str) -> bool:
        """Create a consumer group; ``False`` when it already exists."""

        key = partition_key_for(task_type)
        start = None if start_id == START_FROM_LATEST else RecordId.parse(start_id)
        with storage_errors("create_group"), Session(self.engine) as session:
            now = self.clock()
            self._ensure_partition(session=session, task_type=task_type, now=now)
            if start is None:
                partition = session.exec(
                    select(LogPartition).where(LogPartition.partition_key == key),
                ).one()
                start = RecordId(partition.last_id_ms, partition.last_id_seq)
            result = session.exec(
                sqlite_insert(LogConsumerGroup)
                .values(
                    partition_key=key,
                    group_name=group_name,
                    last_delivered_ms=start.ms,
                    last_delivered_seq=start.seq,
                    acked_count=0,
                    created_at=to_db_datetime(now),
                )
                .on_conflict_do_nothing(),
            )
            session.commit()
            return result.rowcount == 1

    def read_new(  # noqa: PLR0913
        self,
        task_type: str,
        group_name: str,
        consumer_id: str,
        max_count: int = 1,
        block_ms: int = 0,
        *,
        stop_requested: Callable[[], bool] | None = None,
    ) -> list[TaskRecord]:
        """Deliver up to ``max_count`` never-delivered records to ``consumer_id``.

        Waits up to ``block_ms`` when nothing is available, then returns an
        empty list. The wait is woken early by appends from this process and
        is abandoned as soon as ``stop_requested`` returns true.
        """

        if max_count <= 0:
            return []
        deadline = time.monotonic() + max(0, block_ms) / 1000.0
        while True:
            records = self._deliver_new(
                task_type=task_type,
                group_name=group_name,
                consumer_id=consumer_id,
                max_count=max_count,
            )
            if records:
                return records
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            if stop_requested is not None and stop_requested():
                return []
            with self._appended:
                self._appended.wait(timeout=min(remaining, self.poll_interval_seconds))

    def ack(
        self,
        task_type: str,
        group_name: str,
        record_id: RecordId | str,
        *,
        consumer_id: str | None = None,
    ) -> bool:
        """Remove a pending entry; ``False`` when it is already gone or owned elsewhere."""

        key = partition_key_for(task_type)
        rid = _coerce_record_id(record_id)
        with storage_errors("ack"), Session(self.engine) as session:
            entry = session.exec(
                select(LogPendingEntry).where(*_pending_key(key, group_name, rid)),
            ).one_or_none()
            if entry is None:
                logger.debug("Ack no-op for %s/%s %s: no pending entry", key, group_name, rid)
                return False
            if consumer_id is not None and entry.consumer_id != consumer_id:
                logger.warning(
                    "Redundant ack for %s/%s %s from %s: entry now owned by %s",
                    key,
                    group_name,
                    rid,
                    consumer_id,
                    entry.consumer_id,
                )
                return False

            result = session.exec(
                sa_delete(LogPendingEntry).where(
                    *_pending_key(key, group_name, rid),
                    col(LogPendingEntry.consumer_id) == entry.consumer_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(LogConsumerGroup)
                .where(
                    col(LogConsumerGroup.partition_key) == key,
                    col(LogConsumerGroup.group_name) == group_name,
                )
                .values(acked_count=LogConsumerGroup.acked_count + 1),
            )
            session.commit()
            return True

    def list_pending(
        self,
        task_type: str,
        group_name: str,
        min_idle_ms: int = 0,
        *,
        limit: int | None = None,
    ) -> list[PendingEntry]:
        """Pending entries idle at least ``min_idle_ms``, oldest claim first."""

        key = partition_key_for(task_type)
        now = self.clock()
        cutoff = now - timedelta(milliseconds=max(0, min_idle_ms))
        with storage_errors("list_pending"), Session(self.engine) as session:
            statement = (
                select(LogPendingEntry)
                .where(
                    LogPendingEntry.partition_key == key,
                    LogPendingEntry.group_name == group_name,
                    col(LogPendingEntry.claimed_at) <= to_db_datetime(cutoff),
                )
                .order_by(
                    col(LogPendingEntry.claimed_at).asc(),
                    col(LogPendingEntry.id_ms).asc(),
                    col(LogPendingEntry.id_seq).asc(),
                )
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_pending_entry(row, now=now) for row in rows]

    def claim(  # noqa: PLR0913
        self,
        task_type: str,
        group_name: str,
        new_consumer_id: str,
        record_id: RecordId | str,
        min_idle_ms: int,
    ) -> TaskRecord | None:
        """Reassign an idle pending entry to ``new_consumer_id``.

        Returns ``None`` when the entry does not exist, has been idle for less
        than ``min_idle_ms``, or was mutated concurrently.
        """

        key = partition_key_for(task_type)
        rid = _coerce_record_id(record_id)
        now = self.clock()
        cutoff = to_db_datetime(now - timedelta(milliseconds=max(0, min_idle_ms)))
        with storage_errors("claim"), Session(self.engine) as session:
            entry = session.exec(
                select(LogPendingEntry).where(*_pending_key(key, group_name, rid)),
            ).one_or_none()
            if entry is None:
                return None
            if to_db_datetime(entry.claimed_at) > cutoff:
                return None

            result = session.exec(
                sa_update(LogPendingEntry)
                .where(
                    *_pending_key(key, group_name, rid),
                    col(LogPendingEntry.consumer_id) == entry.consumer_id,
                    col(LogPendingEntry.claimed_at) == entry.claimed_at,
                    col(LogPendingEntry.claimed_at) <= cutoff,
                )
                .values(
                    consumer_id=new_consumer_id,
                    claimed_at=to_db_datetime(now),
                    delivery_count=entry.delivery_count + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            record = session.exec(
                select(LogRecord).where(
                    LogRecord.partition_key == key,
                    LogRecord.id_ms == rid.ms,
                    LogRecord.id_seq == rid.seq,
                ),
            ).one_or_none()
            if record is None:
                session.rollback()
                return None
            session.commit()
            logger.debug(
                "Claimed %s/%s %s for %s (previous owner %s)",
                key,
                group_name,
                rid,
                new_consumer_id,
                entry.consumer_id,
            )
            return _to_task_record(record)

    def pending_entry(
        self,
        task_type: str,
        group_name: str,
        record_id: RecordId | str,
    ) -> PendingEntry | None:
        """Current pending entry for one record, if any."""

        key = partition_key_for(task_type)
        rid = _coerce_record_id(record_id)
        now = self.clock()
        with storage_errors("pending_entry"), Session(self.engine) as session:
            row = session.exec(
                select(LogPendingEntry).where(*_pending_key(key, group_name, rid)),
            ).one_or_none()
        return _to_pending_entry(row, now=now) if row is not None else None

    def get_record(self, task_type: str, record_id: RecordId | str) -> TaskRecord | None:
        """Fetch one record by id."""

        key = partition_key_for(task_type)
        rid = _coerce_record_id(record_id)
        with storage_errors("get_record"), Session(self.engine) as session:
            row = session.exec(
                select(LogRecord).where(
                    LogRecord.partition_key == key,
                    LogRecord.id_ms == rid.ms,
                    LogRecord.id_seq == rid.seq,
                ),
            ).one_or_none()
        return _to_task_record(row) if row is not None else None

    def list_records(
        self,
        task_type: str,
        *,
        after: RecordId = ZERO_ID,
        limit: int = 100,
    ) -> list[TaskRecord]:
        """Read a range of records in id order without touching any group."""

        key = partition_key_for(task_type)
        with storage_errors("list_records"), Session(self.engine) as session:
            rows = session.exec(
                select(LogRecord)
                .where(LogRecord.partition_key == key, _after(after))
                .order_by(col(LogRecord.id_ms).asc(), col(LogRecord.id_seq).asc())
                .limit(limit),
            ).all()
        return [_to_task_record(row) for row in rows]

    def get_group(self, task_type: str, group_name: str) -> ConsumerGroupView | None:
        """Readable group cursor, if the group exists."""

        key = partition_key_for(task_type)
        with storage_errors("get_group"), Session(self.engine) as session:
            row = session.exec(
                select(LogConsumerGroup).where(
                    LogConsumerGroup.partition_key == key,
                    LogConsumerGroup.group_name == group_name,
                ),
            ).one_or_none()
        return _to_group_view(row, task_type=task_type) if row is not None else None

    def list_groups(self, task_type: str) -> list[ConsumerGroupView]:
        """Consumer groups of one partition."""

        key = partition_key_for(task_type)
        with storage_errors("list_groups"), Session(self.engine) as session:
            rows = session.exec(
                select(LogConsumerGroup)
                .where(LogConsumerGroup.partition_key == key)
                .order_by(col(LogConsumerGroup.group_name).asc()),
            ).all()
        return [_to_group_view(row, task_type=task_type) for row in rows]

    def list_partitions(self) -> list[PartitionView]:
        """All partitions known to the log."""

        with storage_errors("list_partitions"), Session(self.engine) as session:
            rows = session.exec(
                select(LogPartition).order_by(col(LogPartition.task_type).asc()),
            ).all()
        return [
            PartitionView(
                partition_key=row.partition_key,
                task_type=row.task_type,
                last_id=RecordId(row.last_id_ms, row.last_id_seq),
                appended_count=row.appended_count,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def partition_stats(self, task_type: str) -> PartitionStats:
        """Appended totals plus acked/pending/undelivered accounting per group."""

        key = partition_key_for(task_type)
        with storage_errors("partition_stats"), Session(self.engine) as session:
            partition = session.exec(
                select(LogPartition).where(LogPartition.partition_key == key),
            ).one_or_none()
            stats = PartitionStats(
                task_type=task_type,
                partition_key=key,
                appended=partition.appended_count if partition is not None else 0,
            )
            groups = session.exec(
                select(LogConsumerGroup)
                .where(LogConsumerGroup.partition_key == key)
                .order_by(col(LogConsumerGroup.group_name).asc()),
            ).all()
            for group in groups:
                cursor = RecordId(group.last_delivered_ms, group.last_delivered_seq)
                pending = session.exec(
                    select(func.count())
                    .select_from(LogPendingEntry)
                    .where(
                        LogPendingEntry.partition_key == key,
                        LogPendingEntry.group_name == group.group_name,
                    ),
                ).one()
                undelivered = session.exec(
                    select(func.count())
                    .select_from(LogRecord)
                    .where(LogRecord.partition_key == key, _after(cursor)),
                ).one()
                stats.groups.append(
                    GroupAccounting(
                        group_name=group.group_name,
                        acked=group.acked_count,
                        pending=int(pending),
                        undelivered=int(undelivered),
                    ),
                )
        return stats

    def _deliver_new(
        self,
        *,
        task_type: str,
        group_name: str,
        consumer_id: str,
        max_count: int,
    ) -> list[TaskRecord]:
        key = partition_key_for(task_type)
        with storage_errors("read_new"):
            while True:
                now = self.clock()
                with Session(self.engine) as session:
                    group = session.exec(
                        select(LogConsumerGroup).where(
                            LogConsumerGroup.partition_key == key,
                            LogConsumerGroup.group_name == group_name,
                        ),
                    ).one_or_none()
                    if group is None:
                        raise UnknownConsumerGroup(task_type, group_name)
                    cursor = RecordId(group.last_delivered_ms, group.last_delivered_seq)
                    rows = session.exec(
                        select(LogRecord)
                        .where(LogRecord.partition_key == key, _after(cursor))
                        .order_by(col(LogRecord.id_ms).asc(), col(LogRecord.id_seq).asc())
                        .limit(max_count),
                    ).all()
                    if not rows:
                        return []

                    last = rows[-1]
                    result = session.exec(
                        sa_update(LogConsumerGroup)
                        .where(
                            col(LogConsumerGroup.partition_key) == key,
                            col(LogConsumerGroup.group_name) == group_name,
                            col(LogConsumerGroup.last_delivered_ms) == cursor.ms,
                            col(LogConsumerGroup.last_delivered_seq) == cursor.seq,
                        )
                        .values(last_delivered_ms=last.id_ms, last_delivered_seq=last.id_seq),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue

                    records = [_to_task_record(row) for row in rows]
                    for record in records:
                        session.add(
                            LogPendingEntry(
                                partition_key=key,
                                group_name=group_name,
                                id_ms=record.id.ms,
                                id_seq=record.id.seq,
                                record_id=str(record.id),
                                consumer_id=consumer_id,
                                claimed_at=to_db_datetime(now),
                                delivery_count=1,
                            ),
                        )
                    session.commit()
                    return records

    def _ensure_partition(self, *, session: Session, task_type: str, now: datetime) -> None:
        session.exec(
            sqlite_insert(LogPartition)
            .values(
                partition_key=partition_key_for(task_type),
                task_type=task_type,
                last_id_ms=0,
                last_id_seq=0,
                appended_count=0,
                created_at=to_db_datetime(now),
            )
            .on_conflict_do_nothing(),
        )


def _coerce_record_id(value: RecordId | str) -> RecordId:
    if isinstance(value, RecordId):
        return value
    return RecordId.parse(value)


def _after(cursor: RecordId):  # noqa: ANN202
    return or_(
        col(LogRecord.id_ms) > cursor.ms,
        and_(col(LogRecord.id_ms) == cursor.ms, col(LogRecord.id_seq) > cursor.seq),
    )


def _pending_key(key: str, group_name: str, record_id: RecordId) -> tuple[object, ...]:
    return (
        col(LogPendingEntry.partition_key) == key,
        col(LogPendingEntry.group_name) == group_name,
        col(LogPendingEntry.id_ms) == record_id.ms,
        col(LogPendingEntry.id_seq) == record_id.seq,
    )


def _to_task_record(row: LogRecord) -> TaskRecord:
    return TaskRecord(
        id=RecordId(row.id_ms, row.id_seq),
        task_type=row.task_type,
        payload=row.payload,
        dispatched_at=to_utc_aware_datetime(row.dispatched_at),
        priority=row.priority,
        correlation_id=row.correlation_id,
    )


def _to_pending_entry(row: LogPendingEntry, *, now: datetime) -> PendingEntry:
    claimed_at = to_utc_aware_datetime(row.claimed_at)
    idle_ms = max(0, int((now - claimed_at).total_seconds() * 1000))
    return PendingEntry(
        record_id=RecordId(row.id_ms, row.id_seq),
        consumer_id=row.consumer_id,
        claimed_at=claimed_at,
        delivery_count=row.delivery_count,
        idle_ms=idle_ms,
    )


def _to_group_view(row: LogConsumerGroup, *, task_type: str) -> ConsumerGroupView:
    return ConsumerGroupView(
        task_type=task_type,
        group_name=row.group_name,
        last_delivered_id=RecordId(row.last_delivered_ms, row.last_delivered_seq),
        acked_count=row.acked_count,
        created_at=to_utc_aware_datetime(row.created_at),
    )
