"""Media task queue, failure history, event trail and history archive."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "media_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("stages_json", sa.Text(), nullable=False),
        sa.Column("stage_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("overall_progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("checkpoint_json", sa.Text(), nullable=True),
        sa.Column("checkpoint_epoch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("source_ref", sa.String(), nullable=True),
        sa.Column("input_path", sa.String(), nullable=True),
        sa.Column("destination_path", sa.String(), nullable=False),
        sa.Column("options_json", sa.Text(), nullable=False),
        sa.Column("artifacts_json", sa.Text(), nullable=False),
        sa.Column("downloaded_bytes", sa.Integer(), nullable=True),
        sa.Column("total_bytes", sa.Integer(), nullable=True),
        sa.Column("rate_bps", sa.Float(), nullable=True),
        sa.Column("eta_seconds", sa.Float(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("failure_stage", sa.String(), nullable=True),
        sa.Column("control_request", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_media_tasks_seq", "media_tasks", ["seq"], unique=True)
    op.create_index("ix_media_tasks_kind", "media_tasks", ["kind"])
    op.create_index("ix_media_tasks_status", "media_tasks", ["status"])
    op.create_index("ix_media_tasks_priority", "media_tasks", ["priority"])
    op.create_index("ix_media_tasks_failure_class", "media_tasks", ["failure_class"])
    op.create_index("ix_media_tasks_owner_id", "media_tasks", ["owner_id"])
    op.create_index(
        "idx_media_tasks_ready",
        "media_tasks",
        ["status", "priority", "seq"],
    )

    op.create_table(
        "media_task_failures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("stage_index", sa.Integer(), nullable=False),
        sa.Column("failure_class", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("progress_at_failure", sa.Float(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["media_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_media_task_failures_task_id", "media_task_failures", ["task_id"])
    op.create_index(
        "ix_media_task_failures_failure_class",
        "media_task_failures",
        ["failure_class"],
    )
    op.create_index(
        "idx_media_task_failures_task_time",
        "media_task_failures",
        ["task_id", "created_at"],
    )

    op.create_table(
        "media_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["media_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_media_task_events_task_id", "media_task_events", ["task_id"])
    op.create_index("ix_media_task_events_event_type", "media_task_events", ["event_type"])
    op.create_index("ix_media_task_events_status_from", "media_task_events", ["status_from"])
    op.create_index("ix_media_task_events_status_to", "media_task_events", ["status_to"])
    op.create_index(
        "idx_media_task_events_task_time",
        "media_task_events",
        ["task_id", "created_at"],
    )

    op.create_table(
        "media_task_history",
        sa.Column("history_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("source_ref", sa.String(), nullable=True),
        sa.Column("input_path", sa.String(), nullable=True),
        sa.Column("destination_path", sa.String(), nullable=False),
        sa.Column("stage_name", sa.String(), nullable=True),
        sa.Column("stage_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("overall_progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_bytes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index("ix_media_task_history_task_id", "media_task_history", ["task_id"])
    op.create_index("idx_media_task_history_ended", "media_task_history", ["ended_at"])
    op.create_index("idx_media_task_history_status", "media_task_history", ["status"])


def downgrade() -> None:
    op.drop_index("idx_media_task_history_status", table_name="media_task_history")
    op.drop_index("idx_media_task_history_ended", table_name="media_task_history")
    op.drop_index("ix_media_task_history_task_id", table_name="media_task_history")
    op.drop_table("media_task_history")
    op.drop_index("idx_media_task_events_task_time", table_name="media_task_events")
    op.drop_index("ix_media_task_events_status_to", table_name="media_task_events")
    op.drop_index("ix_media_task_events_status_from", table_name="media_task_events")
    op.drop_index("ix_media_task_events_event_type", table_name="media_task_events")
    op.drop_index("ix_media_task_events_task_id", table_name="media_task_events")
    op.drop_table("media_task_events")
    op.drop_index("idx_media_task_failures_task_time", table_name="media_task_failures")
    op.drop_index("ix_media_task_failures_failure_class", table_name="media_task_failures")
    op.drop_index("ix_media_task_failures_task_id", table_name="media_task_failures")
    op.drop_table("media_task_failures")
    op.drop_index("idx_media_tasks_ready", table_name="media_tasks")
    op.drop_index("ix_media_tasks_owner_id", table_name="media_tasks")
    op.drop_index("ix_media_tasks_failure_class", table_name="media_tasks")
    op.drop_index("ix_media_tasks_priority", table_name="media_tasks")
    op.drop_index("ix_media_tasks_status", table_name="media_tasks")
    op.drop_index("ix_media_tasks_kind", table_name="media_tasks")
    op.drop_index("ix_media_tasks_seq", table_name="media_tasks")
    op.drop_table("media_tasks")
