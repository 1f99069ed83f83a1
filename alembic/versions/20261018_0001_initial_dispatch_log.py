"""Initial dispatch log schema: partitions, records, groups, pending entries."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "log_partitions",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("last_id_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_id_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appended_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("partition_key"),
    )
    op.create_index(
        "ix_log_partitions_task_type",
        "log_partitions",
        ["task_type"],
        unique=True,
    )

    op.create_table(
        "log_records",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("id_ms", sa.BigInteger(), nullable=False, autoincrement=False),
        sa.Column("id_seq", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("payload", sa.LargeBinary(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["partition_key"],
            ["log_partitions.partition_key"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("partition_key", "id_ms", "id_seq"),
    )
    op.create_index("ix_log_records_record_id", "log_records", ["record_id"], unique=False)
    op.create_index(
        "ix_log_records_correlation_id",
        "log_records",
        ["correlation_id"],
        unique=False,
    )

    op.create_table(
        "log_consumer_groups",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("group_name", sa.String(), nullable=False),
        sa.Column("last_delivered_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_delivered_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("acked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["partition_key"],
            ["log_partitions.partition_key"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("partition_key", "group_name"),
    )

    op.create_table(
        "log_pending_entries",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("group_name", sa.String(), nullable=False),
        sa.Column("id_ms", sa.BigInteger(), nullable=False, autoincrement=False),
        sa.Column("id_seq", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("consumer_id", sa.String(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(
            ["partition_key", "group_name"],
            ["log_consumer_groups.partition_key", "log_consumer_groups.group_name"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("partition_key", "group_name", "id_ms", "id_seq"),
    )
    op.create_index(
        "idx_log_pending_idle",
        "log_pending_entries",
        ["partition_key", "group_name", "claimed_at"],
        unique=False,
    )
    op.create_index(
        "ix_log_pending_entries_consumer_id",
        "log_pending_entries",
        ["consumer_id"],
        unique=False,
    )

    op.create_table(
        "consumer_heartbeats",
        sa.Column("consumer_id", sa.String(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ttl_seconds", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("consumer_id"),
    )

    op.create_table(
        "task_outcomes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("detail_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_outcomes_record_id", "task_outcomes", ["record_id"], unique=False)
    op.create_index("ix_task_outcomes_status", "task_outcomes", ["status"], unique=False)
    op.create_index(
        "idx_task_outcomes_type_time",
        "task_outcomes",
        ["task_type", "created_at"],
        unique=False,
    )

    op.create_table(
        "dispatch_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=True),
        sa.Column("task_type", sa.String(), nullable=True),
        sa.Column("consumer_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dispatch_events_event_type",
        "dispatch_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_dispatch_events_correlation_id",
        "dispatch_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        "idx_dispatch_events_record_time",
        "dispatch_events",
        ["record_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "task_checkpoints",
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("state_json", sa.Text(), nullable=False),
        sa.Column("workdir_ref", sa.String(), nullable=True),
        sa.Column("saved_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("partition_key", "record_id"),
    )


def downgrade() -> None:
    op.drop_table("task_checkpoints")
    op.drop_index("idx_dispatch_events_record_time", table_name="dispatch_events")
    op.drop_index("ix_dispatch_events_correlation_id", table_name="dispatch_events")
    op.drop_index("ix_dispatch_events_event_type", table_name="dispatch_events")
    op.drop_table("dispatch_events")
    op.drop_index("idx_task_outcomes_type_time", table_name="task_outcomes")
    op.drop_index("ix_task_outcomes_status", table_name="task_outcomes")
    op.drop_index("ix_task_outcomes_record_id", table_name="task_outcomes")
    op.drop_table("task_outcomes")
    op.drop_table("consumer_heartbeats")
    op.drop_index("ix_log_pending_entries_consumer_id", table_name="log_pending_entries")
    op.drop_index("idx_log_pending_idle", table_name="log_pending_entries")
    op.drop_table("log_pending_entries")
    op.drop_table("log_consumer_groups")
    op.drop_index("ix_log_records_correlation_id", table_name="log_records")
    op.drop_index("ix_log_records_record_id", table_name="log_records")
    op.drop_table("log_records")
    op.drop_index("ix_log_partitions_task_type", table_name="log_partitions")
    op.drop_table("log_partitions")
