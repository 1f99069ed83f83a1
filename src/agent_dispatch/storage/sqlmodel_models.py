"""SQLModel ORM tables for the dispatch log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKeyConstraint,
    Index,
    LargeBinary,
    Text,
)
from sqlmodel import Field, SQLModel


class LogPartition(SQLModel, table=True):
    __tablename__ = "log_partitions"  # type: ignore[bad-override]

    partition_key: str = Field(primary_key=True)
    task_type: str = Field(unique=True, index=True)
    last_id_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    last_id_seq: int = Field(default=0)
    appended_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LogRecord(SQLModel, table=True):
    __tablename__ = "log_records"  # type: ignore[bad-override]
    __table_args__ = (
        ForeignKeyConstraint(
            ["partition_key"],
            ["log_partitions.partition_key"],
            ondelete="CASCADE",
        ),
    )

    partition_key: str = Field(primary_key=True)
    id_ms: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    id_seq: int = Field(primary_key=True)
    record_id: str = Field(index=True)
    task_type: str
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    priority: int = Field(default=100)
    correlation_id: str | None = Field(default=None, index=True)
    dispatched_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LogConsumerGroup(SQLModel, table=True):
    __tablename__ = "log_consumer_groups"  # type: ignore[bad-override]
    __table_args__ = (
        ForeignKeyConstraint(
            ["partition_key"],
            ["log_partitions.partition_key"],
            ondelete="CASCADE",
        ),
    )

    partition_key: str = Field(primary_key=True)
    group_name: str = Field(primary_key=True)
    last_delivered_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    last_delivered_seq: int = Field(default=0)
    acked_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LogPendingEntry(SQLModel, table=True):
    __tablename__ = "log_pending_entries"  # type: ignore[bad-override]
    __table_args__ = (
        ForeignKeyConstraint(
            ["partition_key", "group_name"],
            ["log_consumer_groups.partition_key", "log_consumer_groups.group_name"],
            ondelete="CASCADE",
        ),
        Index("idx_log_pending_idle", "partition_key", "group_name", "claimed_at"),
    )

    partition_key: str = Field(primary_key=True)
    group_name: str = Field(primary_key=True)
    id_ms: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    id_seq: int = Field(primary_key=True)
    record_id: str
    consumer_id: str = Field(index=True)
    claimed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    delivery_count: int = Field(default=1)


class ConsumerHeartbeatRow(SQLModel, table=True):
    __tablename__ = "consumer_heartbeats"  # type: ignore[bad-override]

    consumer_id: str = Field(primary_key=True)
    last_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ttl_seconds: int


class TaskOutcomeRow(SQLModel, table=True):
    __tablename__ = "task_outcomes"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_outcomes_type_time", "task_type", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    record_id: str = Field(index=True)
    task_type: str
    status: str = Field(index=True)
    detail_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DispatchEventRow(SQLModel, table=True):
    __tablename__ = "dispatch_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_events_record_time", "record_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    record_id: str | None = None
    task_type: str | None = None
    consumer_id: str | None = None
    correlation_id: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskCheckpointRow(SQLModel, table=True):
    __tablename__ = "task_checkpoints"  # type: ignore[bad-override]

    partition_key: str = Field(primary_key=True)
    record_id: str = Field(primary_key=True)
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    workdir_ref: str | None = None
    saved_by: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
