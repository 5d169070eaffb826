"""SQLModel ORM tables for task orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class MediaTask(SQLModel, table=True):
    __tablename__ = "media_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_media_tasks_ready", "status", "priority", "seq"),)

    task_id: str = Field(primary_key=True)
    seq: int = Field(index=True, unique=True)
    kind: str = Field(index=True)
    stages_json: str = Field(sa_column=Column(Text, nullable=False))
    stage_index: int = Field(default=0)
    status: str = Field(index=True)
    progress: float = Field(default=0.0)
    overall_progress: float = Field(default=0.0)
    checkpoint_json: str | None = Field(default=None, sa_column=Column(Text))
    checkpoint_epoch: int = Field(default=0)
    priority: int = Field(default=0, index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    source_ref: str | None = None
    input_path: str | None = None
    destination_path: str
    options_json: str = Field(sa_column=Column(Text, nullable=False))
    artifacts_json: str = Field(sa_column=Column(Text, nullable=False))
    downloaded_bytes: int | None = None
    total_bytes: int | None = None
    rate_bps: float | None = None
    eta_seconds: float | None = None
    next_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    failure_stage: str | None = None
    control_request: str | None = None
    owner_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class MediaTaskFailure(SQLModel, table=True):
    __tablename__ = "media_task_failures"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_media_task_failures_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("media_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    stage_index: int
    failure_class: str = Field(index=True)
    reason: str = Field(sa_column=Column(Text, nullable=False))
    progress_at_failure: float = Field(default=0.0)
    retry_count: int = Field(default=0)
    retryable: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MediaTaskEvent(SQLModel, table=True):
    __tablename__ = "media_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_media_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("media_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MediaTaskHistory(SQLModel, table=True):
    __tablename__ = "media_task_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_media_task_history_ended", "ended_at"),
        Index("idx_media_task_history_status", "status"),
    )

    history_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    kind: str
    status: str
    source_ref: str | None = None
    input_path: str | None = None
    destination_path: str
    stage_name: str | None = None
    stage_index: int = 0
    retry_count: int = 0
    failure_class: str | None = None
    reason: str | None = Field(default=None, sa_column=Column(Text))
    overall_progress: float = 0.0
    total_bytes: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    snapshot_json: str = Field(sa_column=Column(Text, nullable=False))


class SchedulerLease(SQLModel, table=True):
    __tablename__ = "scheduler_leases"  # type: ignore[bad-override]

    lease_name: str = Field(primary_key=True)
    owner_id: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    heartbeat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
