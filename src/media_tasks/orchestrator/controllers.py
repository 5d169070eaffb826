"""Controllers for media task CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from media_tasks.config import Settings
from media_tasks.orchestrator.collaborators import Collaborators
from media_tasks.orchestrator.events import TaskEvent, TerminalEvent
from media_tasks.orchestrator.models import TaskKind, TaskStatus, TaskView
from media_tasks.orchestrator.repository import TaskStore
from media_tasks.orchestrator.services import FetchOptions, MediaTaskService, build_scheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitFetchCommand:
    """CLI input for queuing a download."""

    db_path: Path | None
    source_ref: str
    destination: Path
    quality: str = "best"
    subtitle_language: str | None = None
    translate_to: str | None = None
    embed_subtitles: bool = False
    bilingual: bool = False
    expected_sha256: str | None = None
    parallel_chunks: int = 1
    priority: int = 0
    max_retries: int | None = None


@dataclass(slots=True)
class SubmitDeriveCommand:
    """CLI input for queuing a local derivation."""

    db_path: Path | None
    input_path: Path
    output_path: Path
    operation: str = "compress"
    two_pass: bool = True
    crf: int | None = None
    preset: str | None = None
    video_codec: str | None = None
    scale_height: int | None = None
    target_size_mb: float | None = None
    subtitle_language: str | None = None
    translate_to: str | None = None
    bilingual: bool = False
    embed: bool = False
    priority: int = 0
    max_retries: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    kind: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for pause/resume/cancel/retry/remove."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for archived task listing."""

    db_path: Path | None
    status: str | None
    limit: int
    ended_after: datetime | None = None
    ended_before: datetime | None = None


@dataclass(slots=True)
class ClearHistoryCommand:
    """CLI input for deleting archived outcomes."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class ClearCompletedCommand:
    db_path: Path | None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class RunSchedulerCommand:
    """CLI input for running the scheduler in the foreground."""

    db_path: Path | None
    until_idle: bool
    max_concurrent: int | None = None


class MediaTasksCliController:
    """Coordinates submission, control and inspection CLI operations."""

    def __init__(self, *, collaborators_factory: Callable[[Settings], Collaborators] | None = None):
        self.collaborators_factory = collaborators_factory

    def submit_fetch(self, command: SubmitFetchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            task = service.submit_fetch_task(
                command.source_ref,
                command.destination,
                FetchOptions(
                    quality=command.quality,
                    subtitle_language=command.subtitle_language,
                    translate_to=command.translate_to,
                    embed_subtitles=command.embed_subtitles,
                    bilingual=command.bilingual,
                    expected_sha256=command.expected_sha256,
                    parallel_chunks=command.parallel_chunks,
                ),
                priority=command.priority,
                max_retries=command.max_retries,
            )
        return [
            f"Task queued: task_id={task.task_id} kind={task.kind.value} "
            f"stages={','.join(task.stages)}",
        ]

    def submit_derive(self, command: SubmitDeriveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config: dict[str, Any] = {"operation": command.operation, "two_pass": command.two_pass}
        optional = {
            "crf": command.crf,
            "preset": command.preset,
            "video_codec": command.video_codec,
            "scale_height": command.scale_height,
            "target_size_mb": command.target_size_mb,
            "subtitle_language": command.subtitle_language,
            "translate_to": command.translate_to,
        }
        config.update({key: value for key, value in optional.items() if value is not None})
        if command.bilingual:
            config["bilingual"] = True
        if command.embed:
            config["embed"] = True
        with self._service(settings) as service:
            task = service.submit_derive_task(
                command.input_path,
                command.output_path,
                config,
                priority=command.priority,
                max_retries=command.max_retries,
            )
        return [
            f"Task queued: task_id={task.task_id} kind={task.kind.value} "
            f"stages={','.join(task.stages)}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = (TaskStatus(command.status),) if command.status else ()
        kind = TaskKind(command.kind) if command.kind else None
        with self._service(settings) as service:
            tasks = service.list_tasks(statuses=statuses, kind=kind, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            details = service.store.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Kind: {task.kind.value}",
            f"Status: {task.status.value}",
            f"Stage: {task.current_stage} ({task.stage_index + 1}/{len(task.stages)})",
            f"Progress: {task.overall_progress:.1%} (stage {task.progress:.1%})",
            f"Bytes: {_bytes_line(task)}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Next attempt: {_dt(task.next_attempt_at)}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.last_error or '-'}",
            f"Source: {task.source_ref or task.input_path or '-'}",
            f"Destination: {task.destination_path}",
            f"Checkpoint: {task.checkpoint.to_dict() if task.checkpoint else '-'}",
            f"Failures: {len(details.failures)}",
        ]
        for failure in details.failures:
            lines.append(
                f"  {failure.created_at.isoformat()} {failure.stage} "
                f"{failure.failure_class.value} retryable={failure.retryable} "
                f"{failure.reason}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def pause_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            service.pause(command.task_id)
        return [f"Pause requested: {command.task_id}"]

    def resume_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            task = service.resume(command.task_id)
        return [f"Task resumed: {task.task_id} status={task.status.value}"]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            task = service.cancel(command.task_id)
        if task.status == TaskStatus.RUNNING:
            return [f"Cancel requested: {task.task_id}"]
        return [f"Task cancelled: {task.task_id}"]

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            service.retry(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def remove_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            service.remove_task(command.task_id)
        return [f"Task removed: {command.task_id}"]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with self._service(settings) as service:
            entries = service.list_history(
                status=status,
                limit=command.limit,
                ended_after=command.ended_after,
                ended_before=command.ended_before,
            )

        lines = [f"History: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.ended_at.isoformat()} {entry.task_id} kind={entry.kind.value} "
                f"status={entry.status.value} stage={entry.stage_name or '-'} "
                f"retries={entry.retry_count} reason={entry.reason or '-'}",
            )
        return lines

    def delete_history(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            removed = service.delete_history(command.task_id)
        return [f"History entries removed: {removed} ({command.task_id})"]

    def clear_history(self, command: ClearHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with self._service(settings) as service:
            removed = service.clear_history(status=status)
        return [f"History entries removed: {removed}"]

    def clear_completed(self, command: ClearCompletedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            removed = service.clear_completed()
        return [f"Completed tasks removed: {len(removed)}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(settings) as service:
            stats = service.stats()
        return [
            f"Tasks: {stats.total}",
            f"  queued={stats.queued} running={stats.running} paused={stats.paused} "
            f"retrying={stats.retrying}",
            f"  completed={stats.completed} failed={stats.failed} cancelled={stats.cancelled}",
        ]

    def run_scheduler(self, command: RunSchedulerCommand) -> list[str]:
        """Run the scheduler until interrupted (or until the queue drains)."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrent is not None:
            settings.scheduler.max_concurrent = command.max_concurrent
        settings.validate()
        stop_requested = threading.Event()
        outcomes: dict[TaskStatus, int] = {}

        def _on_event(event: TaskEvent) -> None:
            if isinstance(event, TerminalEvent):
                outcomes[event.status] = outcomes.get(event.status, 0) + 1
                logger.info(
                    "Task %s %s%s",
                    event.task_id,
                    event.status.value,
                    f": {event.reason}" if event.reason else "",
                )

        with self._service(settings) as service:
            scheduler = service.scheduler
            scheduler.subscribe(None, _on_event)
            scheduler.start()
            try:
                with _signal_handlers(stop_requested):
                    while not stop_requested.is_set():
                        if command.until_idle and scheduler.wait_until_idle(timeout=0.5):
                            break
                        if not command.until_idle:
                            stop_requested.wait(0.5)
            finally:
                scheduler.stop()

        return [
            "Scheduler summary: "
            f"completed={outcomes.get(TaskStatus.COMPLETED, 0)} "
            f"failed={outcomes.get(TaskStatus.FAILED, 0)} "
            f"cancelled={outcomes.get(TaskStatus.CANCELLED, 0)}",
        ]

    @contextmanager
    def _service(self, settings: Settings) -> Iterator[MediaTaskService]:
        with _store(settings) as store:
            collaborators = (
                self.collaborators_factory(settings) if self.collaborators_factory else None
            )
            scheduler = build_scheduler(settings, store=store, collaborators=collaborators)
            yield MediaTaskService(
                scheduler=scheduler,
                default_max_retries=settings.scheduler.default_max_retries,
            )


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        settings.db_path,
        busy_timeout_ms=settings.scheduler.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _signal_handlers(stop_requested: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping scheduler", name)
        stop_requested.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _task_line(task: TaskView) -> str:
    line = (
        f"{task.task_id} {task.kind.value} status={task.status.value} "
        f"stage={task.current_stage} progress={task.overall_progress:.1%} "
        f"priority={task.priority} retries={task.retry_count}/{task.max_retries}"
    )
    if task.status == TaskStatus.RETRYING and task.next_attempt_at is not None:
        line += f" next_attempt={task.next_attempt_at.isoformat()}"
    if task.last_error and task.status in {TaskStatus.FAILED, TaskStatus.RETRYING}:
        line += f" error={task.last_error}"
    return line


def _bytes_line(task: TaskView) -> str:
    if task.downloaded_bytes is None and task.total_bytes is None:
        return "-"
    return f"{task.downloaded_bytes or 0}/{task.total_bytes if task.total_bytes else '?'}"


def _dt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
