"""Use-case services for submitting and controlling media tasks."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from media_tasks.config import Settings
from media_tasks.orchestrator.backend import (
    CommandTranslator,
    FfmpegTranscoder,
    WhisperCppTranscriber,
    YtDlpFetcher,
)
from media_tasks.orchestrator.collaborators import Collaborators
from media_tasks.orchestrator.errors import TaskNotFoundError, ValidationError
from media_tasks.orchestrator.events import EventCallback, EventBus
from media_tasks.orchestrator.executor import StageExecutor
from media_tasks.orchestrator.models import (
    TaskCreate,
    TaskDetails,
    TaskFilter,
    TaskHistoryView,
    TaskKind,
    TaskStats,
    TaskStatus,
    TaskView,
)
from media_tasks.orchestrator.progress import ProgressAggregator
from media_tasks.orchestrator.repository import TaskStore
from media_tasks.orchestrator.resume import ResumeManager
from media_tasks.orchestrator.retry_policy import RetryPolicy
from media_tasks.orchestrator.scheduler import Scheduler
from media_tasks.orchestrator.stages import DERIVE_OPERATIONS, derive_stages, fetch_stages
from media_tasks.orchestrator.workdir import TaskWorkdirManager

_QUALITY_CHOICES = ("best", "2160p", "1440p", "1080p", "720p", "480p", "360p", "240p", "144p")


@dataclass(slots=True)
class FetchOptions:
    """Options of a fetch task, stored on the task as JSON."""

    quality: str = "best"
    subtitle_language: str | None = None
    translate_to: str | None = None
    embed_subtitles: bool = False
    bilingual: bool = False
    expected_sha256: str | None = None
    parallel_chunks: int = 1
    rate_limit_kbps: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "quality": self.quality,
            "parallel_chunks": self.parallel_chunks,
            "embed_subtitles": self.embed_subtitles,
            "bilingual": self.bilingual,
        }
        for key in ("subtitle_language", "translate_to", "expected_sha256", "rate_limit_kbps"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class MediaTaskService:
    """Submission, control and inspection of media tasks."""

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        default_max_retries: int = 3,
    ) -> None:
        self.scheduler = scheduler
        self.store = scheduler.store
        self.default_max_retries = default_max_retries

    def submit_fetch_task(  # noqa: PLR0913
        self,
        source_ref: str,
        destination_path: Path | str,
        options: FetchOptions | dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_retries: int | None = None,
        task_id: str | None = None,
    ) -> TaskView:
        """Queue a download of ``source_ref`` into ``destination_path``."""

        if not source_ref or not source_ref.strip():
            raise ValidationError("source_ref is required.")
        payload = _fetch_options(options)
        if payload["quality"] not in _QUALITY_CHOICES:
            raise ValidationError(
                f"Unsupported quality {payload['quality']!r}. Expected one of {_QUALITY_CHOICES}.",
            )
        if int(payload["parallel_chunks"]) < 1:
            raise ValidationError("parallel_chunks must be >= 1.")
        caption = bool(payload.get("subtitle_language"))
        stages = fetch_stages(
            caption=caption,
            translate=bool(payload.get("translate_to")),
            embed=bool(payload.get("embed_subtitles")),
        )
        return self.scheduler.submit(
            TaskCreate(
                kind=TaskKind.FETCH,
                stages=stages,
                destination_path=str(_destination(destination_path)),
                source_ref=source_ref.strip(),
                task_id=task_id,
                priority=priority,
                max_retries=self._max_retries(max_retries),
                options=payload,
            ),
        )

    def submit_derive_task(  # noqa: PLR0913
        self,
        input_path: Path | str,
        output_path: Path | str,
        stage_config: dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_retries: int | None = None,
        task_id: str | None = None,
    ) -> TaskView:
        """Queue a local derivation (compression or captioning) of ``input_path``."""

        config = dict(stage_config or {})
        source = Path(input_path).expanduser()
        if not source.is_file():
            raise ValidationError(f"Input file does not exist: {source}")
        operation = str(config.setdefault("operation", "compress"))
        if operation not in DERIVE_OPERATIONS:
            raise ValidationError(
                f"Unsupported derive operation: {operation!r}. "
                f"Expected one of {DERIVE_OPERATIONS}.",
            )
        if operation == "compress" and config.get("crf") is None and not (
            config.get("target_size_mb") or config.get("video_bitrate_kbps")
        ):
            config["crf"] = 23
        stages = derive_stages(
            operation=operation,
            two_pass=bool(config.get("two_pass", True)),
            translate=bool(config.get("translate_to")),
            embed=bool(config.get("embed")),
        )
        destination = _destination(output_path)
        if destination.resolve() == source.resolve():
            raise ValidationError("Output path must differ from the input path.")
        return self.scheduler.submit(
            TaskCreate(
                kind=TaskKind.DERIVE,
                stages=stages,
                destination_path=str(destination),
                input_path=str(source),
                task_id=task_id,
                priority=priority,
                max_retries=self._max_retries(max_retries),
                options=config,
            ),
        )

    def pause(self, task_id: str) -> TaskView:
        return self.scheduler.pause(task_id)

    def resume(self, task_id: str) -> TaskView:
        return self.scheduler.resume(task_id)

    def cancel(self, task_id: str) -> TaskView:
        return self.scheduler.cancel(task_id)

    def retry(self, task_id: str) -> TaskView:
        return self.scheduler.retry(task_id)

    def get_task(self, task_id: str) -> TaskView:
        return self.store.require_task(task_id)

    def get_task_details(self, task_id: str) -> TaskDetails:
        details = self.store.get_task_details(task_id)
        if details is None:
            raise TaskNotFoundError(task_id)
        return details

    def list_tasks(
        self,
        *,
        statuses: tuple[TaskStatus, ...] = (),
        kind: TaskKind | None = None,
        limit: int = 100,
    ) -> list[TaskView]:
        return self.scheduler.list(TaskFilter(statuses=statuses, kind=kind, limit=limit))

    def list_history(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
        ended_after: datetime | None = None,
        ended_before: datetime | None = None,
    ) -> list[TaskHistoryView]:
        if ended_after and ended_before and ended_after > ended_before:
            raise ValidationError("ended_after must not be later than ended_before.")
        return self.store.list_history(
            status=status,
            limit=limit,
            ended_after=ended_after,
            ended_before=ended_before,
        )

    def delete_history(self, task_id: str) -> int:
        removed = self.store.delete_history(task_id)
        if removed == 0:
            raise TaskNotFoundError(task_id)
        return removed

    def clear_history(self, *, status: TaskStatus | None = None) -> int:
        return self.store.clear_history(status=status)

    def clear_completed(self) -> list[str]:
        """Drop completed tasks from the task list, keeping their history."""

        removed = self.store.clear_completed()
        for task_id in removed:
            self.scheduler.executor.workdirs.cleanup(task_id)
        return removed

    def stats(self) -> TaskStats:
        return self.store.stats()

    def remove_task(self, task_id: str) -> None:
        """Delete a non-running task and its working directory."""

        self.store.remove_task(task_id)
        self.scheduler.executor.workdirs.cleanup(task_id)

    def subscribe(self, task_id: str | None, callback: EventCallback) -> Callable[[], None]:
        return self.scheduler.subscribe(task_id, callback)

    def _max_retries(self, value: int | None) -> int:
        retries = self.default_max_retries if value is None else value
        if retries < 0:
            raise ValidationError("max_retries must be >= 0.")
        return retries


def default_collaborators(settings: Settings) -> Collaborators:
    """Command-line tool collaborators configured from settings."""

    tools = settings.tools
    timeouts = settings.stage_timeouts
    return Collaborators(
        fetcher=YtDlpFetcher(
            binary=tools.ytdlp_binary,
            probe_timeout_seconds=timeouts.get("info"),
            grace_seconds=tools.process_grace_seconds,
        ),
        transcoder=FfmpegTranscoder(
            ffmpeg_binary=tools.ffmpeg_binary,
            ffprobe_binary=tools.ffprobe_binary,
            grace_seconds=tools.process_grace_seconds,
        ),
        transcriber=WhisperCppTranscriber(
            binary=tools.whisper_binary,
            model_path=tools.whisper_model_path,
            threads=tools.whisper_threads,
            grace_seconds=tools.process_grace_seconds,
        ),
        translator=CommandTranslator(
            command_template=tools.translate_command or "",
            grace_seconds=tools.process_grace_seconds,
        ),
    )


def build_scheduler(
    settings: Settings,
    *,
    store: TaskStore,
    collaborators: Collaborators | None = None,
    events: EventBus | None = None,
) -> Scheduler:
    """Wire a scheduler from settings; the caller decides whether to start it."""

    executor = StageExecutor(
        collaborators=collaborators or default_collaborators(settings),
        workdirs=TaskWorkdirManager(settings.workdir_root),
        stage_timeouts=settings.stage_timeouts,
        slow_rate_bps=settings.retry.slow_rate_bps,
        slow_window_seconds=settings.retry.slow_window_seconds,
        translation_batch_size=settings.tools.translation_batch_size,
    )
    return Scheduler(
        store=store,
        executor=executor,
        resume_manager=ResumeManager(),
        retry_policy=RetryPolicy(
            rate_limit_base_seconds=settings.retry.rate_limit_base_seconds,
            rate_limit_max_seconds=settings.retry.rate_limit_max_seconds,
            remote_server_step_seconds=settings.retry.remote_server_step_seconds,
            quota_delay_seconds=settings.retry.quota_delay_seconds,
            transient_exit_codes=settings.retry.transient_exit_codes,
        ),
        aggregator=ProgressAggregator(ema_alpha=settings.progress.ema_alpha),
        events=events,
        max_concurrent=settings.scheduler.max_concurrent,
        tick_seconds=settings.scheduler.tick_seconds,
        lease_stale_seconds=settings.scheduler.lease_stale_seconds,
        progress_persist_seconds=settings.progress.persist_interval_seconds,
        checkpoint_interval_seconds=settings.scheduler.checkpoint_interval_seconds,
        graceful_shutdown_seconds=settings.scheduler.graceful_shutdown_seconds,
    )


def _fetch_options(options: FetchOptions | dict[str, Any] | None) -> dict[str, Any]:
    if options is None:
        return FetchOptions().to_dict()
    if isinstance(options, FetchOptions):
        return options.to_dict()
    return {**FetchOptions().to_dict(), **options}


def _destination(path: Path | str) -> Path:
    destination = Path(path).expanduser()
    if not destination.name:
        raise ValidationError("destination path must name a file.")
    return destination
