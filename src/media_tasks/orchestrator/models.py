"""Domain models for media task orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskKind(str, Enum):
    """What a task consumes: a network source or a local file."""

    FETCH = "fetch"
    DERIVE = "derive"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)

# Manual retry is the only way out of failed/cancelled; completed is final.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.RETRYING,
            TaskStatus.PAUSED,
            TaskStatus.CANCELLED,
            TaskStatus.QUEUED,
        },
    ),
    TaskStatus.RETRYING: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.FAILED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.COMPLETED: frozenset(),
}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT_IO = "transient_io"
    RATE_LIMITED = "rate_limited"
    REMOTE_SERVER = "remote_server"
    QUOTA = "quota"
    DISK_SPACE = "disk_space"
    UNSUPPORTED_FORMAT = "unsupported_format"
    CORRUPTION = "corruption"
    VALIDATION = "validation"
    PROCESS_FAILED = "process_failed"
    INTERNAL = "internal"


class RetryStrategy(str, Enum):
    """How a retryable failure is re-attempted."""

    NONE = "none"
    IMMEDIATE = "immediate"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    SCHEDULED = "scheduled"
    RESTART_FROM_ZERO = "restart_from_zero"


class StageOutcome(str, Enum):
    """Result kind of one stage execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ControlRequest(str, Enum):
    """Stop intent delivered to a running stage."""

    PAUSE = "pause"
    CANCEL = "cancel"


class CheckpointKind(str, Enum):
    """Resume token flavour."""

    BYTES = "bytes"
    PASS = "pass"


@dataclass(slots=True)
class Checkpoint:
    """Opaque per-stage resume token."""

    kind: CheckpointKind
    stage: str
    bytes_confirmed: int = 0
    total_bytes: int | None = None
    partial_path: str | None = None
    pass_number: int | None = None
    passlog_path: str | None = None
    fingerprint: str | None = None
    fingerprint_window: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "bytes_confirmed": self.bytes_confirmed,
            "total_bytes": self.total_bytes,
            "partial_path": self.partial_path,
            "pass_number": self.pass_number,
            "passlog_path": self.passlog_path,
            "fingerprint": self.fingerprint,
            "fingerprint_window": self.fingerprint_window,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        return cls(
            kind=CheckpointKind(payload["kind"]),
            stage=str(payload["stage"]),
            bytes_confirmed=int(payload.get("bytes_confirmed") or 0),
            total_bytes=_optional_int(payload.get("total_bytes")),
            partial_path=payload.get("partial_path"),
            pass_number=_optional_int(payload.get("pass_number")),
            passlog_path=payload.get("passlog_path"),
            fingerprint=payload.get("fingerprint"),
            fingerprint_window=_optional_int(payload.get("fingerprint_window")),
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    kind: TaskKind
    stages: tuple[str, ...]
    destination_path: str
    source_ref: str | None = None
    input_path: str | None = None
    task_id: str | None = None
    priority: int = 0
    max_retries: int = 3
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot for scheduler, CLI and observers."""

    task_id: str
    seq: int
    kind: TaskKind
    stages: tuple[str, ...]
    stage_index: int
    status: TaskStatus
    progress: float
    overall_progress: float
    checkpoint: Checkpoint | None
    checkpoint_epoch: int
    priority: int
    retry_count: int
    max_retries: int
    source_ref: str | None
    input_path: str | None
    destination_path: str
    options: dict[str, Any]
    artifacts: dict[str, Any]
    downloaded_bytes: int | None
    total_bytes: int | None
    rate_bps: float | None
    eta_seconds: float | None
    next_attempt_at: datetime | None
    last_error: str | None
    failure_class: FailureClass | None
    failure_stage: str | None
    control_request: ControlRequest | None
    owner_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    ended_at: datetime | None

    @property
    def current_stage(self) -> str:
        if self.stage_index >= len(self.stages):
            return self.stages[-1]
        return self.stages[self.stage_index]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_last_stage(self) -> bool:
        return self.stage_index >= len(self.stages) - 1


@dataclass(slots=True)
class FailureRecordWrite:
    """One failure appended to a task's history."""

    stage: str
    stage_index: int
    failure_class: FailureClass
    reason: str
    progress_at_failure: float
    retry_count: int
    retryable: bool


@dataclass(slots=True)
class FailureRecordView:
    """Stored failure history entry."""

    id: int
    task_id: str
    stage: str
    stage_index: int
    failure_class: FailureClass
    reason: str
    progress_at_failure: float
    retry_count: int
    retryable: bool
    created_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and failure history."""

    task: TaskView
    events: list[TaskEventView]
    failures: list[FailureRecordView]


@dataclass(slots=True)
class TaskFilter:
    """Query filter for task listing."""

    statuses: tuple[TaskStatus, ...] = ()
    kind: TaskKind | None = None
    limit: int = 100


@dataclass(slots=True)
class TaskHistoryView:
    """Archived terminal task."""

    history_id: int
    task_id: str
    kind: TaskKind
    status: TaskStatus
    source_ref: str | None
    input_path: str | None
    destination_path: str
    stage_name: str | None
    stage_index: int
    retry_count: int
    failure_class: FailureClass | None
    reason: str | None
    overall_progress: float
    total_bytes: int | None
    created_at: datetime
    started_at: datetime | None
    ended_at: datetime


@dataclass(slots=True)
class TaskProgress:
    """Task-level progress reported to observers."""

    task_id: str
    stage_index: int
    stage_name: str
    stage_fraction: float
    overall_fraction: float
    rate_bps: float | None = None
    eta_seconds: float | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None


@dataclass(slots=True)
class TaskStats:
    """Task counts by status."""

    total: int = 0
    queued: int = 0
    running: int = 0
    paused: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[arg-type]
