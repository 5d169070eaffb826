"""CLI entrypoint for media-tasks."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import rich_click as click

from media_tasks import __version__
from media_tasks.orchestrator.controllers import (
    ClearCompletedCommand,
    ClearHistoryCommand,
    HistoryCommand,
    InspectTaskCommand,
    ListTasksCommand,
    MediaTasksCliController,
    MutateTaskCommand,
    RunSchedulerCommand,
    StatsCommand,
    SubmitDeriveCommand,
    SubmitFetchCommand,
)
from media_tasks.orchestrator.errors import MediaTaskError
from media_tasks.orchestrator.models import TaskKind, TaskStatus
from media_tasks.orchestrator.stages import DERIVE_OPERATIONS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MediaTasksCliController()

_STATUS_CHOICES = [status.value for status in TaskStatus]
_KIND_CHOICES = [kind.value for kind in TaskKind]
_QUALITY_CHOICES = ["best", "2160p", "1440p", "1080p", "720p", "480p", "360p", "240p", "144p"]

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to MEDIA_TASKS_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="media-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def media_tasks(log_level: str) -> None:
    """Resumable media task queue: fetch, caption, translate, compress."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@media_tasks.group()
def submit() -> None:
    """Queue new tasks."""


@submit.command("fetch")
@_db_path_option
@click.argument("source_ref")
@click.argument("destination", type=click.Path(path_type=Path))
@click.option(
    "--quality",
    type=click.Choice(_QUALITY_CHOICES),
    default="best",
    show_default=True,
    help="Preferred resolution.",
)
@click.option("--subtitle-language", default=None, help="Generate captions in this language.")
@click.option("--translate-to", default=None, help="Translate captions to this language.")
@click.option("--embed-subtitles", is_flag=True, help="Mux captions into the media file.")
@click.option("--bilingual", is_flag=True, help="Keep original lines under translations.")
@click.option("--sha256", "expected_sha256", default=None, help="Expected checksum of the file.")
@click.option(
    "--parallel-chunks",
    type=click.IntRange(min=1, max=32),
    default=1,
    show_default=True,
    help="Concurrent fragment downloads.",
)
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry budget.")
def submit_fetch(  # noqa: PLR0913
    db_path: Path | None,
    source_ref: str,
    destination: Path,
    quality: str,
    subtitle_language: str | None,
    translate_to: str | None,
    embed_subtitles: bool,
    bilingual: bool,
    expected_sha256: str | None,
    parallel_chunks: int,
    priority: int,
    max_retries: int | None,
) -> None:
    """Download SOURCE_REF into DESTINATION, optionally with captions."""

    _emit_from(
        lambda: CONTROLLER.submit_fetch(
            SubmitFetchCommand(
                db_path=db_path,
                source_ref=source_ref,
                destination=destination,
                quality=quality,
                subtitle_language=subtitle_language,
                translate_to=translate_to,
                embed_subtitles=embed_subtitles,
                bilingual=bilingual,
                expected_sha256=expected_sha256,
                parallel_chunks=parallel_chunks,
                priority=priority,
                max_retries=max_retries,
            ),
        ),
    )


@submit.command("derive")
@_db_path_option
@click.argument("input_path", type=click.Path(path_type=Path))
@click.argument("output_path", type=click.Path(path_type=Path))
@click.option(
    "--operation",
    type=click.Choice(list(DERIVE_OPERATIONS)),
    default="compress",
    show_default=True,
    help="What to derive from the input.",
)
@click.option("--single-pass", is_flag=True, help="One CRF encode instead of two passes.")
@click.option("--crf", type=click.IntRange(min=0, max=63), default=None, help="Quality factor.")
@click.option("--preset", default=None, help="Encoder preset, for example medium.")
@click.option("--video-codec", default=None, help="Encoder, for example libx265.")
@click.option("--scale-height", type=click.IntRange(min=16), default=None, help="Output height.")
@click.option("--target-size-mb", type=float, default=None, help="Aim for this output size.")
@click.option("--subtitle-language", default=None, help="Spoken language hint for captions.")
@click.option("--translate-to", default=None, help="Translate captions to this language.")
@click.option("--bilingual", is_flag=True, help="Keep original lines under translations.")
@click.option("--embed", is_flag=True, help="Mux captions into OUTPUT_PATH.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry budget.")
def submit_derive(  # noqa: PLR0913
    db_path: Path | None,
    input_path: Path,
    output_path: Path,
    operation: str,
    single_pass: bool,
    crf: int | None,
    preset: str | None,
    video_codec: str | None,
    scale_height: int | None,
    target_size_mb: float | None,
    subtitle_language: str | None,
    translate_to: str | None,
    bilingual: bool,
    embed: bool,
    priority: int,
    max_retries: int | None,
) -> None:
    """Derive OUTPUT_PATH from the local file INPUT_PATH."""

    _emit_from(
        lambda: CONTROLLER.submit_derive(
            SubmitDeriveCommand(
                db_path=db_path,
                input_path=input_path,
                output_path=output_path,
                operation=operation,
                two_pass=not single_pass,
                crf=crf,
                preset=preset,
                video_codec=video_codec,
                scale_height=scale_height,
                target_size_mb=target_size_mb,
                subtitle_language=subtitle_language,
                translate_to=translate_to,
                bilingual=bilingual,
                embed=embed,
                priority=priority,
                max_retries=max_retries,
            ),
        ),
    )


@media_tasks.command("tasks")
@_db_path_option
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None, help="Filter.")
@click.option("--kind", type=click.Choice(_KIND_CHOICES), default=None, help="Filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max tasks to show.",
)
def list_tasks(db_path: Path | None, status: str | None, kind: str | None, limit: int) -> None:
    """List tasks, most recently submitted first."""

    _emit_from(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, kind=kind, limit=limit),
        ),
    )


@media_tasks.command("inspect")
@_db_path_option
@click.argument("task_id")
def inspect_task(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with failure and event history."""

    _emit_from(
        lambda: CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


@media_tasks.command("pause")
@_db_path_option
@click.argument("task_id")
def pause_task(db_path: Path | None, task_id: str) -> None:
    """Pause a running task at its next checkpoint."""

    _emit_from(lambda: CONTROLLER.pause_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@media_tasks.command("resume")
@_db_path_option
@click.argument("task_id")
def resume_task(db_path: Path | None, task_id: str) -> None:
    """Re-queue a paused task at its checkpoint."""

    _emit_from(lambda: CONTROLLER.resume_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@media_tasks.command("cancel")
@_db_path_option
@click.argument("task_id")
def cancel_task(db_path: Path | None, task_id: str) -> None:
    """Cancel a task."""

    _emit_from(lambda: CONTROLLER.cancel_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@media_tasks.command("retry")
@_db_path_option
@click.argument("task_id")
def retry_task(db_path: Path | None, task_id: str) -> None:
    """Re-queue a failed or cancelled task with a fresh retry budget."""

    _emit_from(lambda: CONTROLLER.retry_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@media_tasks.command("remove")
@_db_path_option
@click.argument("task_id")
def remove_task(db_path: Path | None, task_id: str) -> None:
    """Delete a task that is not running."""

    _emit_from(lambda: CONTROLLER.remove_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@media_tasks.command("history")
@_db_path_option
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None, help="Filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max entries to show.",
)
@click.option("--since", type=click.DateTime(), default=None, help="Ended at or after (UTC).")
@click.option("--until", type=click.DateTime(), default=None, help="Ended at or before (UTC).")
def history(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    limit: int,
    since: datetime | None,
    until: datetime | None,
) -> None:
    """List finished tasks, most recently ended first."""

    _emit_from(
        lambda: CONTROLLER.history(
            HistoryCommand(
                db_path=db_path,
                status=status,
                limit=limit,
                ended_after=_as_utc(since),
                ended_before=_as_utc(until),
            ),
        ),
    )


@media_tasks.command("history-delete")
@_db_path_option
@click.argument("task_id")
def history_delete(db_path: Path | None, task_id: str) -> None:
    """Delete the archived outcomes of one task."""

    _emit_from(
        lambda: CONTROLLER.delete_history(MutateTaskCommand(db_path=db_path, task_id=task_id)),
    )


@media_tasks.command("history-clear")
@_db_path_option
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None, help="Only this.")
def history_clear(db_path: Path | None, status: str | None) -> None:
    """Delete archived outcomes."""

    _emit_from(
        lambda: CONTROLLER.clear_history(ClearHistoryCommand(db_path=db_path, status=status)),
    )


@media_tasks.command("clear-completed")
@_db_path_option
def clear_completed(db_path: Path | None) -> None:
    """Remove completed tasks from the task list; history keeps them."""

    _emit_from(lambda: CONTROLLER.clear_completed(ClearCompletedCommand(db_path=db_path)))


@media_tasks.command("stats")
@_db_path_option
def stats(db_path: Path | None) -> None:
    """Show task counts by status."""

    _emit_from(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path)))


@media_tasks.command("run")
@_db_path_option
@click.option("--until-idle", is_flag=True, help="Exit once nothing is queued or running.")
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Override MEDIA_TASKS_MAX_CONCURRENT.",
)
def run_scheduler(db_path: Path | None, until_idle: bool, max_concurrent: int | None) -> None:
    """Run the scheduler in the foreground until interrupted."""

    _emit_from(
        lambda: CONTROLLER.run_scheduler(
            RunSchedulerCommand(
                db_path=db_path,
                until_idle=until_idle,
                max_concurrent=max_concurrent,
            ),
        ),
    )


def _emit_from(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (MediaTaskError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    media_tasks()
