"""Error taxonomy for stage execution and task lifecycle operations."""

from __future__ import annotations

from collections.abc import Sequence

from media_tasks.orchestrator.models import FailureClass, TaskStatus


class MediaTaskError(RuntimeError):
    """Base class for orchestration errors."""

    failure_class: FailureClass | None = None


class ValidationError(MediaTaskError, ValueError):
    """Bad submission input; never retried."""

    failure_class = FailureClass.VALIDATION


class NetworkTransientError(MediaTaskError):
    """Connection reset, DNS hiccup, read timeout."""

    failure_class = FailureClass.TRANSIENT_IO


class RateLimitError(MediaTaskError):
    """Remote side throttled the request."""

    failure_class = FailureClass.RATE_LIMITED

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class RemoteServerError(MediaTaskError):
    """Remote side answered with a server error."""

    failure_class = FailureClass.REMOTE_SERVER

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaError(MediaTaskError):
    """Remote quota or capacity exhausted."""

    failure_class = FailureClass.QUOTA


class DiskSpaceError(MediaTaskError):
    """Local disk is full."""

    failure_class = FailureClass.DISK_SPACE


class UnsupportedFormatError(MediaTaskError):
    """Input or requested format cannot be handled."""

    failure_class = FailureClass.UNSUPPORTED_FORMAT


class CorruptionError(MediaTaskError):
    """Partial or final artifact does not match its recorded checksum."""

    failure_class = FailureClass.CORRUPTION


class ProcessExitError(MediaTaskError):
    """External command exited with a non-zero code."""

    failure_class = FailureClass.PROCESS_FAILED

    def __init__(
        self,
        *,
        command: str,
        exit_code: int,
        stderr_tail: Sequence[str] = (),
    ) -> None:
        tail = "\n".join(stderr_tail).strip()
        message = f"{command} exited with code {exit_code}"
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = tuple(stderr_tail)


class StageTimeoutError(MediaTaskError, TimeoutError):
    """Stage exceeded its time budget; handled as a transient I/O failure."""

    failure_class = FailureClass.TRANSIENT_IO

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class TaskCancelledError(MediaTaskError):
    """Stage stopped on request. Not a failure."""


class TaskNotFoundError(MediaTaskError, LookupError):
    """Unknown task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidStateTransition(MediaTaskError):
    """Requested lifecycle change is not allowed from the current status."""

    def __init__(self, task_id: str, status_from: TaskStatus, status_to: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id} cannot move from {status_from.value} to {status_to.value}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class SchedulerLockError(MediaTaskError):
    """Another scheduler already owns the task store."""
