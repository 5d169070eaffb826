"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from media_tasks.orchestrator.errors import (
    InvalidStateTransition,
    SchedulerLockError,
    TaskNotFoundError,
    ValidationError,
)
from media_tasks.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    Checkpoint,
    CheckpointKind,
    ControlRequest,
    FailureClass,
    FailureRecordView,
    FailureRecordWrite,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskFilter,
    TaskHistoryView,
    TaskKind,
    TaskStats,
    TaskStatus,
    TaskView,
)
from media_tasks.orchestrator.stages import validate_stages
from media_tasks.storage.alembic_runner import upgrade_head
from media_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from media_tasks.storage.sqlmodel_models import (
    MediaTask,
    MediaTaskEvent,
    MediaTaskFailure,
    MediaTaskHistory,
    SchedulerLease,
)

logger = logging.getLogger(__name__)

SCHEDULER_LEASE = "scheduler"


class TaskStore:
    """Task persistence facade. Single source of truth for task state."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # -- submission & queries ------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a queued task."""

        validate_stages(payload.kind, payload.stages)
        if payload.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(MediaTask, task_id) is not None:
                raise ValidationError(f"Task id already exists: {task_id}")
            last_seq = session.exec(
                select(func.coalesce(func.max(col(MediaTask.seq)), 0)),
            ).one()
            row = MediaTask(
                task_id=task_id,
                seq=int(last_seq) + 1,
                kind=payload.kind.value,
                stages_json=json.dumps(list(payload.stages)),
                stage_index=0,
                status=TaskStatus.QUEUED.value,
                priority=payload.priority,
                max_retries=payload.max_retries,
                source_ref=payload.source_ref,
                input_path=payload.input_path,
                destination_path=payload.destination_path,
                options_json=_dumps(payload.options),
                artifacts_json="{}",
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="submitted",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "kind": payload.kind.value,
                    "stages": list(payload.stages),
                    "priority": payload.priority,
                    "max_retries": payload.max_retries,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(MediaTask, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskView]:
        """List tasks, most recently submitted first."""

        task_filter = task_filter or TaskFilter()
        with Session(self.engine) as session:
            statement = select(MediaTask).order_by(col(MediaTask.seq).desc())
            if task_filter.statuses:
                statement = statement.where(
                    col(MediaTask.status).in_([status.value for status in task_filter.statuses]),
                )
            if task_filter.kind is not None:
                statement = statement.where(MediaTask.kind == task_filter.kind.value)
            rows = session.exec(statement.limit(task_filter.limit)).all()
        return [_to_task_view(row) for row in rows]

    def next_ready(self, *, limit: int = 1, exclude: Collection[str] = ()) -> list[TaskView]:
        """Queued tasks in admission order: priority desc, submission order asc."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            statement = (
                select(MediaTask)
                .where(MediaTask.status == TaskStatus.QUEUED.value)
                .order_by(col(MediaTask.priority).desc(), col(MediaTask.seq).asc())
                .limit(limit)
            )
            if exclude:
                statement = statement.where(col(MediaTask.task_id).not_in(list(exclude)))
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_by_status(self, status: TaskStatus) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count()).select_from(MediaTask).where(
                        MediaTask.status == status.value,
                    ),
                ).one(),
            )

    def stats(self) -> TaskStats:
        """Task counts by status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(MediaTask.status, func.count()).group_by(MediaTask.status),
            ).all()
        stats = TaskStats()
        for status, count in rows:
            setattr(stats, TaskStatus(status).value, int(count))
            stats.total += int(count)
        return stats

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with its event stream and failure history."""

        with Session(self.engine) as session:
            row = session.get(MediaTask, task_id)
            if row is None:
                return None
            task = _to_task_view(row)
            event_rows = session.exec(
                select(MediaTaskEvent)
                .where(MediaTaskEvent.task_id == task_id)
                .order_by(col(MediaTaskEvent.id).asc()),
            ).all()
            events = [_to_event_view(event_row) for event_row in event_rows]
        return TaskDetails(task=task, events=events, failures=self.list_failures(task_id))

    def list_failures(self, task_id: str) -> list[FailureRecordView]:
        """Failure history of one task in the order it happened."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(MediaTaskFailure)
                .where(MediaTaskFailure.task_id == task_id)
                .order_by(col(MediaTaskFailure.id).asc()),
            ).all()
        return [
            FailureRecordView(
                id=row.id or 0,
                task_id=row.task_id,
                stage=row.stage,
                stage_index=row.stage_index,
                failure_class=FailureClass(row.failure_class),
                reason=row.reason,
                progress_at_failure=row.progress_at_failure,
                retry_count=row.retry_count,
                retryable=row.retryable,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def list_history(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
        ended_after: datetime | None = None,
        ended_before: datetime | None = None,
    ) -> list[TaskHistoryView]:
        """Archived terminal tasks, most recently ended first.

        ``ended_after`` and ``ended_before`` bound ``ended_at`` inclusively.
        """

        with Session(self.engine) as session:
            statement = select(MediaTaskHistory).order_by(
                col(MediaTaskHistory.ended_at).desc(),
                col(MediaTaskHistory.history_id).desc(),
            )
            if status is not None:
                statement = statement.where(MediaTaskHistory.status == status.value)
            if ended_after is not None:
                statement = statement.where(
                    col(MediaTaskHistory.ended_at) >= to_db_datetime(ended_after),
                )
            if ended_before is not None:
                statement = statement.where(
                    col(MediaTaskHistory.ended_at) <= to_db_datetime(ended_before),
                )
            rows = session.exec(statement.limit(limit)).all()
        return [_to_history_view(row) for row in rows]

    def delete_history(self, task_id: str) -> int:
        """Delete every archived outcome of one task; returns the number of rows removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(MediaTaskHistory).where(col(MediaTaskHistory.task_id) == task_id),
            )
            session.commit()
            return result.rowcount

    def clear_history(self, *, status: TaskStatus | None = None) -> int:
        """Delete archived outcomes, optionally only those with ``status``."""

        statement = sa_delete(MediaTaskHistory)
        if status is not None:
            statement = statement.where(col(MediaTaskHistory.status) == status.value)
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
        logger.info("Cleared %d history entries", result.rowcount)
        return result.rowcount

    def clear_completed(self) -> list[str]:
        """Delete completed tasks with their events and failures; history rows stay."""

        with Session(self.engine) as session:
            task_ids = list(
                session.exec(
                    select(MediaTask.task_id).where(
                        col(MediaTask.status) == TaskStatus.COMPLETED.value,
                    ),
                ).all(),
            )
            if not task_ids:
                return []
            session.exec(sa_delete(MediaTaskEvent).where(col(MediaTaskEvent.task_id).in_(task_ids)))
            session.exec(
                sa_delete(MediaTaskFailure).where(col(MediaTaskFailure.task_id).in_(task_ids)),
            )
            session.exec(
                sa_delete(MediaTask).where(
                    col(MediaTask.task_id).in_(task_ids),
                    col(MediaTask.status) == TaskStatus.COMPLETED.value,
                ),
            )
            session.commit()
        logger.info("Removed %d completed tasks", len(task_ids))
        return task_ids

    # -- lifecycle transitions -----------------------------------------------

    def start_task(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        owner_id: str,
        stage_index: int,
        checkpoint: Checkpoint | None,
        restart_from_zero: bool,
        reason: str,
        overall_progress: float | None = None,
    ) -> TaskView:
        """Admit a queued task: mark it running at the starting point chosen on resume.

        A byte checkpoint also resets stage progress to the confirmed byte ratio so
        that samples from the resumed transfer are not rejected as regressions.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            stages = _stages(row)
            if not 0 <= stage_index < len(stages):
                raise ValueError(f"stage_index {stage_index} out of range for {task_id}")
            values: dict[str, Any] = {
                "owner_id": owner_id,
                "stage_index": stage_index,
                "checkpoint_json": _dumps(checkpoint.to_dict()) if checkpoint else None,
                "started_at": row.started_at or now,
                "next_attempt_at": None,
                "control_request": None,
                "ended_at": None,
            }
            if restart_from_zero:
                values.update(
                    progress=0.0,
                    downloaded_bytes=None,
                    rate_bps=None,
                    eta_seconds=None,
                    checkpoint_epoch=row.checkpoint_epoch + 1,
                )
            elif checkpoint is not None and checkpoint.kind == CheckpointKind.BYTES:
                values["downloaded_bytes"] = checkpoint.bytes_confirmed
                if checkpoint.total_bytes:
                    values["progress"] = min(
                        1.0,
                        checkpoint.bytes_confirmed / checkpoint.total_bytes,
                    )
            if overall_progress is not None:
                values["overall_progress"] = overall_progress
            elif stage_index < row.stage_index:
                values["overall_progress"] = 0.0
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.RUNNING,
                event_type="started",
                details={
                    "stage": stages[stage_index],
                    "stage_index": stage_index,
                    "restart_from_zero": restart_from_zero,
                    "reason": reason,
                    "owner_id": owner_id,
                },
                values=values,
                now=now,
            )
            session.commit()
            return _to_task_view(row)

    def update_progress(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        stage_index: int,
        checkpoint_epoch: int,
        progress: float,
        overall_progress: float,
        downloaded_bytes: int | None = None,
        total_bytes: int | None = None,
        rate_bps: float | None = None,
        eta_seconds: float | None = None,
    ) -> bool:
        """Persist a progress sample; regressions within a stage/epoch are ignored."""

        progress = min(1.0, max(0.0, progress))
        if downloaded_bytes is not None and total_bytes is not None:
            downloaded_bytes = min(downloaded_bytes, total_bytes)
        values: dict[str, Any] = {
            "progress": progress,
            "overall_progress": func.max(col(MediaTask.overall_progress), overall_progress),
            "rate_bps": rate_bps,
            "eta_seconds": eta_seconds,
            "updated_at": to_db_datetime(utc_now()),
        }
        if downloaded_bytes is not None:
            values["downloaded_bytes"] = downloaded_bytes
        if total_bytes is not None:
            values["total_bytes"] = total_bytes
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MediaTask)
                .where(
                    col(MediaTask.task_id) == task_id,
                    col(MediaTask.status) == TaskStatus.RUNNING.value,
                    col(MediaTask.stage_index) == stage_index,
                    col(MediaTask.checkpoint_epoch) == checkpoint_epoch,
                    col(MediaTask.progress) <= progress,
                )
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def save_checkpoint(self, task_id: str, checkpoint: Checkpoint) -> bool:
        """Store a validated checkpoint of a running task."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MediaTask)
                .where(
                    col(MediaTask.task_id) == task_id,
                    col(MediaTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    checkpoint_json=_dumps(checkpoint.to_dict()),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def advance_stage(self, task_id: str, *, artifacts: dict[str, Any]) -> TaskView:
        """Record stage success and move a running task to its next stage."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            stages = _stages(row)
            if row.status != TaskStatus.RUNNING.value:
                raise InvalidStateTransition(task_id, TaskStatus(row.status), TaskStatus.RUNNING)
            current = row.stage_index
            if current >= len(stages) - 1:
                raise RuntimeError(f"Task {task_id} has no stage after {stages[-1]}")
            merged = {**_loads(row.artifacts_json), **artifacts}
            result = session.exec(
                sa_update(MediaTask)
                .where(
                    col(MediaTask.task_id) == task_id,
                    col(MediaTask.status) == TaskStatus.RUNNING.value,
                    col(MediaTask.stage_index) == current,
                )
                .values(
                    stage_index=current + 1,
                    progress=0.0,
                    checkpoint_json=None,
                    rate_bps=None,
                    eta_seconds=None,
                    artifacts_json=_dumps(merged),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Task state changed concurrently while advancing (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="stage_completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RUNNING,
                details={
                    "stage": stages[current],
                    "next_stage": stages[current + 1],
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def complete_task(self, task_id: str, *, artifacts: dict[str, Any]) -> TaskView:
        """Mark a running task completed after its last stage and archive it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            stages = _stages(row)
            if row.stage_index != len(stages) - 1:
                raise RuntimeError(
                    f"Task {task_id} cannot complete at stage "
                    f"{row.stage_index + 1}/{len(stages)}",
                )
            merged = {**_loads(row.artifacts_json), **artifacts}
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.COMPLETED,
                event_type="completed",
                details={"stage": stages[-1]},
                values={
                    "progress": 1.0,
                    "overall_progress": 1.0,
                    "downloaded_bytes": (
                        row.total_bytes if row.total_bytes is not None else row.downloaded_bytes
                    ),
                    "rate_bps": None,
                    "eta_seconds": 0.0,
                    "checkpoint_json": None,
                    "artifacts_json": _dumps(merged),
                    "control_request": None,
                    "owner_id": None,
                    "ended_at": now,
                },
                now=now,
            )
            self._archive(session, row=row, reason=None)
            session.commit()
            return _to_task_view(row)

    def fail_task(self, task_id: str, *, failure: FailureRecordWrite) -> TaskView:
        """Record a terminal failure of a running task and archive it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._add_failure(session, task_id=task_id, failure=failure, now=now)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.FAILED,
                event_type="failed",
                details={
                    "stage": failure.stage,
                    "failure_class": failure.failure_class.value,
                    "reason": failure.reason,
                    "retry_count": failure.retry_count,
                },
                values={
                    "last_error": failure.reason,
                    "failure_class": failure.failure_class.value,
                    "failure_stage": failure.stage,
                    "rate_bps": None,
                    "eta_seconds": None,
                    "control_request": None,
                    "owner_id": None,
                    "next_attempt_at": None,
                    "ended_at": now,
                },
                now=now,
            )
            self._archive(session, row=row, reason=failure.reason)
            session.commit()
            return _to_task_view(row)

    def schedule_retry(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        failure: FailureRecordWrite,
        next_attempt_at: datetime,
        checkpoint: Checkpoint | None,
        restart_from_zero: bool,
        options: dict[str, Any] | None = None,
    ) -> TaskView:
        """Record a retryable failure and park the task until ``next_attempt_at``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            if row.retry_count >= row.max_retries:
                raise RuntimeError(
                    f"Retry budget exhausted for {task_id} ({row.retry_count}/{row.max_retries})",
                )
            self._add_failure(session, task_id=task_id, failure=failure, now=now)
            values: dict[str, Any] = {
                "retry_count": row.retry_count + 1,
                "next_attempt_at": to_db_datetime(next_attempt_at),
                "last_error": failure.reason,
                "failure_class": failure.failure_class.value,
                "failure_stage": failure.stage,
                "checkpoint_json": _dumps(checkpoint.to_dict()) if checkpoint else None,
                "rate_bps": None,
                "eta_seconds": None,
                "control_request": None,
                "owner_id": None,
            }
            if restart_from_zero:
                values.update(
                    progress=0.0,
                    downloaded_bytes=None,
                    checkpoint_epoch=row.checkpoint_epoch + 1,
                )
            if options is not None:
                values["options_json"] = _dumps(options)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.RETRYING,
                event_type="retry_scheduled",
                details={
                    "stage": failure.stage,
                    "failure_class": failure.failure_class.value,
                    "retry_count": row.retry_count + 1,
                    "next_attempt_at": to_utc_aware_datetime(next_attempt_at).isoformat(),
                    "restart_from_zero": restart_from_zero,
                },
                values=values,
                now=now,
            )
            session.commit()
            return _to_task_view(row)

    def release_retry(self, task_id: str) -> TaskView:
        """Move a retrying task whose backoff elapsed back to the ready queue."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.QUEUED,
                event_type="retry_due",
                details={"retry_count": row.retry_count},
                values={"next_attempt_at": None},
            )
            session.commit()
            return _to_task_view(row)

    def pause_task(self, task_id: str, *, checkpoint: Checkpoint | None) -> TaskView:
        """Park a running task at a validated checkpoint."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.PAUSED,
                event_type="paused",
                details={"checkpoint": checkpoint.to_dict() if checkpoint else None},
                values={
                    "checkpoint_json": _dumps(checkpoint.to_dict()) if checkpoint else None,
                    "rate_bps": None,
                    "eta_seconds": None,
                    "control_request": None,
                    "owner_id": None,
                },
            )
            session.commit()
            return _to_task_view(row)

    def resume_task(self, task_id: str) -> TaskView:
        """Re-enqueue a paused task at its checkpoint."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.QUEUED,
                event_type="resumed",
                details={},
                values={},
            )
            session.commit()
            return _to_task_view(row)

    def requeue_task(self, task_id: str, *, reason: str) -> TaskView:
        """Return a running or retrying task to the ready queue, keeping its checkpoint."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.QUEUED,
                event_type="requeued",
                details={"reason": reason},
                values={
                    "next_attempt_at": None,
                    "rate_bps": None,
                    "eta_seconds": None,
                    "control_request": None,
                    "owner_id": None,
                },
            )
            session.commit()
            return _to_task_view(row)

    def cancel_task(self, task_id: str, *, reason: str = "cancelled by request") -> TaskView:
        """Mark a task cancelled and archive it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.CANCELLED,
                event_type="cancelled",
                details={"reason": reason},
                values={
                    "rate_bps": None,
                    "eta_seconds": None,
                    "next_attempt_at": None,
                    "control_request": None,
                    "owner_id": None,
                    "ended_at": now,
                },
                now=now,
            )
            self._archive(session, row=row, reason=reason)
            session.commit()
            return _to_task_view(row)

    def manual_retry(self, task_id: str) -> TaskView:
        """Operator retry: re-queue a failed/cancelled task with a fresh retry budget."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
                raise InvalidStateTransition(task_id, previous, TaskStatus.QUEUED)
            self._transition(
                session,
                row=row,
                status_to=TaskStatus.QUEUED,
                event_type="manual_retry",
                details={"previous_retry_count": row.retry_count},
                values={
                    "retry_count": 0,
                    "next_attempt_at": None,
                    "last_error": None,
                    "failure_class": None,
                    "failure_stage": None,
                    "ended_at": None,
                },
            )
            session.commit()
            return _to_task_view(row)

    def recover_interrupted(self) -> list[str]:
        """Return tasks left running by a dead scheduler to the ready queue.

        Retrying tasks keep their countdown; the scheduler re-arms it on start.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(MediaTask)
                .where(
                    col(MediaTask.status) == TaskStatus.RUNNING.value,
                )
                .order_by(col(MediaTask.seq).asc()),
            ).all()
            task_ids = [row.task_id for row in rows]
        recovered: list[str] = []
        for task_id in task_ids:
            self.requeue_task(task_id, reason="recovered after interruption")
            logger.warning("Recovered interrupted task %s", task_id)
            recovered.append(task_id)
        return recovered

    def remove_task(self, task_id: str) -> None:
        """Delete a task with its events and failures. Running tasks are refused."""

        with Session(self.engine) as session:
            row = self._get_row(session, task_id)
            if row.status == TaskStatus.RUNNING.value:
                raise ValidationError(f"Task {task_id} is running and cannot be removed")
            session.exec(sa_delete(MediaTaskEvent).where(col(MediaTaskEvent.task_id) == task_id))
            session.exec(
                sa_delete(MediaTaskFailure).where(col(MediaTaskFailure.task_id) == task_id),
            )
            session.delete(row)
            session.commit()

    # -- cross-process control requests --------------------------------------

    def request_control(self, task_id: str, request: ControlRequest) -> bool:
        """Record pause/cancel intent for a task run by another process."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MediaTask)
                .where(
                    col(MediaTask.task_id) == task_id,
                    col(MediaTask.status) == TaskStatus.RUNNING.value,
                )
                .values(control_request=request.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="control_requested",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RUNNING,
                details={"request": request.value},
            )
            session.commit()
            return True

    def pending_controls(self) -> list[tuple[str, ControlRequest]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MediaTask.task_id, MediaTask.control_request).where(
                    MediaTask.status == TaskStatus.RUNNING.value,
                    col(MediaTask.control_request).is_not(None),
                ),
            ).all()
        return [(task_id, ControlRequest(request)) for task_id, request in rows]

    def clear_control(self, task_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(MediaTask)
                .where(col(MediaTask.task_id) == task_id)
                .values(control_request=None),
            )
            session.commit()

    # -- scheduler lease -----------------------------------------------------

    def acquire_lease(self, owner_id: str, *, stale_after_seconds: float) -> None:
        """Become the single orchestration authority or raise SchedulerLockError."""

        now = utc_now()
        stale_before = to_db_datetime(now - timedelta(seconds=stale_after_seconds))
        with Session(self.engine) as session:
            existing = session.get(SchedulerLease, SCHEDULER_LEASE)
            if existing is None:
                session.add(
                    SchedulerLease(
                        lease_name=SCHEDULER_LEASE,
                        owner_id=owner_id,
                        acquired_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                    ),
                )
                try:
                    session.commit()
                except IntegrityError as error:
                    raise SchedulerLockError(
                        "Another scheduler acquired the task store concurrently.",
                    ) from error
                return
            result = session.exec(
                sa_update(SchedulerLease)
                .where(
                    col(SchedulerLease.lease_name) == SCHEDULER_LEASE,
                    or_(
                        col(SchedulerLease.owner_id) == owner_id,
                        col(SchedulerLease.heartbeat_at) < stale_before,
                    ),
                )
                .values(
                    owner_id=owner_id,
                    acquired_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise SchedulerLockError(
                    f"Task store {self.db_path} is owned by scheduler {existing.owner_id}.",
                )
            if existing.owner_id != owner_id:
                logger.warning("Took over stale scheduler lease from %s", existing.owner_id)
            session.commit()

    def heartbeat_lease(self, owner_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SchedulerLease)
                .where(
                    col(SchedulerLease.lease_name) == SCHEDULER_LEASE,
                    col(SchedulerLease.owner_id) == owner_id,
                )
                .values(heartbeat_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def release_lease(self, owner_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_delete(SchedulerLease).where(
                    col(SchedulerLease.lease_name) == SCHEDULER_LEASE,
                    col(SchedulerLease.owner_id) == owner_id,
                ),
            )
            session.commit()

    def current_lease_owner(self) -> str | None:
        with Session(self.engine) as session:
            lease = session.get(SchedulerLease, SCHEDULER_LEASE)
            return lease.owner_id if lease is not None else None

    # -- internals -----------------------------------------------------------

    def _get_row(self, session: Session, task_id: str) -> MediaTask:
        row = session.get(MediaTask, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _transition(  # noqa: PLR0913
        self,
        session: Session,
        *,
        row: MediaTask,
        status_to: TaskStatus,
        event_type: str,
        details: dict[str, object],
        values: dict[str, Any],
        now: datetime | None = None,
    ) -> None:
        status_from = TaskStatus(row.status)
        if status_to not in ALLOWED_TRANSITIONS[status_from]:
            raise InvalidStateTransition(row.task_id, status_from, status_to)
        result = session.exec(
            sa_update(MediaTask)
            .where(
                col(MediaTask.task_id) == row.task_id,
                col(MediaTask.status) == status_from.value,
            )
            .values(
                status=status_to.value,
                updated_at=now or to_db_datetime(utc_now()),
                **values,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise RuntimeError(
                "Task state changed concurrently; "
                f"please retry command (task_id={row.task_id}).",
            )
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details=details,
        )
        session.refresh(row)
        logger.debug("Task %s: %s -> %s", row.task_id, status_from.value, status_to.value)

    def _add_failure(
        self,
        session: Session,
        *,
        task_id: str,
        failure: FailureRecordWrite,
        now: datetime,
    ) -> None:
        session.add(
            MediaTaskFailure(
                task_id=task_id,
                stage=failure.stage,
                stage_index=failure.stage_index,
                failure_class=failure.failure_class.value,
                reason=failure.reason,
                progress_at_failure=failure.progress_at_failure,
                retry_count=failure.retry_count,
                retryable=failure.retryable,
                created_at=now,
            ),
        )

    def _archive(self, session: Session, *, row: MediaTask, reason: str | None) -> None:
        stages = _stages(row)
        stage_index = min(row.stage_index, len(stages) - 1)
        session.add(
            MediaTaskHistory(
                task_id=row.task_id,
                kind=row.kind,
                status=row.status,
                source_ref=row.source_ref,
                input_path=row.input_path,
                destination_path=row.destination_path,
                stage_name=stages[stage_index],
                stage_index=stage_index,
                retry_count=row.retry_count,
                failure_class=row.failure_class if row.status == TaskStatus.FAILED.value else None,
                reason=reason,
                overall_progress=row.overall_progress,
                total_bytes=row.total_bytes,
                created_at=row.created_at,
                started_at=row.started_at,
                ended_at=row.ended_at or to_db_datetime(utc_now()),
                snapshot_json=_dumps(
                    {
                        "stages": stages,
                        "options": _loads(row.options_json),
                        "artifacts": _loads(row.artifacts_json),
                        "priority": row.priority,
                        "max_retries": row.max_retries,
                    },
                ),
            ),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            MediaTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _stages(row: MediaTask) -> list[str]:
    return [str(stage) for stage in json.loads(row.stages_json)]


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: MediaTask) -> TaskView:
    checkpoint_payload = _loads(row.checkpoint_json)
    return TaskView(
        task_id=row.task_id,
        seq=row.seq,
        kind=TaskKind(row.kind),
        stages=tuple(_stages(row)),
        stage_index=row.stage_index,
        status=TaskStatus(row.status),
        progress=row.progress,
        overall_progress=row.overall_progress,
        checkpoint=Checkpoint.from_dict(checkpoint_payload) if checkpoint_payload else None,
        checkpoint_epoch=row.checkpoint_epoch,
        priority=row.priority,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        source_ref=row.source_ref,
        input_path=row.input_path,
        destination_path=row.destination_path,
        options=_loads(row.options_json),
        artifacts=_loads(row.artifacts_json),
        downloaded_bytes=row.downloaded_bytes,
        total_bytes=row.total_bytes,
        rate_bps=row.rate_bps,
        eta_seconds=row.eta_seconds,
        next_attempt_at=_optional_aware(row.next_attempt_at),
        last_error=row.last_error,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        failure_stage=row.failure_stage,
        control_request=ControlRequest(row.control_request) if row.control_request else None,
        owner_id=row.owner_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_aware(row.started_at),
        ended_at=_optional_aware(row.ended_at),
    )


def _to_event_view(row: MediaTaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_loads(row.details_json),
    )


def _to_history_view(row: MediaTaskHistory) -> TaskHistoryView:
    return TaskHistoryView(
        history_id=row.history_id or 0,
        task_id=row.task_id,
        kind=TaskKind(row.kind),
        status=TaskStatus(row.status),
        source_ref=row.source_ref,
        input_path=row.input_path,
        destination_path=row.destination_path,
        stage_name=row.stage_name,
        stage_index=row.stage_index,
        retry_count=row.retry_count,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        reason=row.reason,
        overall_progress=row.overall_progress,
        total_bytes=row.total_bytes,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        ended_at=to_utc_aware_datetime(row.ended_at),
    )
