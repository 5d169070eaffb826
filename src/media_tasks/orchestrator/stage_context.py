"""What a stage handler sees while it runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from media_tasks.orchestrator.collaborators import Collaborators, StopToken
from media_tasks.orchestrator.models import Checkpoint, TaskView
from media_tasks.orchestrator.resume import ResumePlan
from media_tasks.orchestrator.retry_policy import ThroughputAdvice, ThroughputMonitor
from media_tasks.orchestrator.workdir import TaskWorkdir


class StagePaused(Exception):  # noqa: N818
    """Raised by a handler at a safe point after a pause request."""


@dataclass(slots=True)
class StageProgressReport:
    """Raw progress of one stage, posted to the scheduler."""

    task_id: str
    stage_name: str
    stage_index: int
    checkpoint_epoch: int
    fraction: float
    rate_bps: float | None = None
    eta_seconds: float | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None
    checkpoint: Checkpoint | None = None


ProgressSink = Callable[[StageProgressReport], None]


class StageContext:
    """Inputs, progress reporting and stop handling for one stage run."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        stage_name: str,
        plan: ResumePlan,
        workdir: TaskWorkdir,
        token: StopToken,
        collaborators: Collaborators,
        on_progress: ProgressSink,
        throughput: ThroughputMonitor | None = None,
        translation_batch_size: int = 50,
    ) -> None:
        self.task = task
        self.stage_name = stage_name
        self.plan = plan
        self.workdir = workdir
        self.token = token
        self.collaborators = collaborators
        self.translation_batch_size = translation_batch_size
        self._on_progress = on_progress
        self._throughput = throughput
        self.proposed_checkpoint: Checkpoint | None = None

    @property
    def options(self) -> dict[str, Any]:
        return self.task.options

    @property
    def artifacts(self) -> dict[str, Any]:
        return self.task.artifacts

    @property
    def destination(self) -> Path:
        return Path(self.task.destination_path)

    @property
    def advice(self) -> ThroughputAdvice | None:
        return self._throughput.advice if self._throughput is not None else None

    def fetch_hints(self) -> dict[str, Any]:
        """Base fetch options overlaid with hints carried over from a slow attempt."""

        hints: dict[str, Any] = {
            key: self.options[key]
            for key in ("quality", "parallel_chunks", "rate_limit_kbps", "proxy", "cookies")
            if self.options.get(key) is not None
        }
        hints.update(self.options.get("fetch_hints") or {})
        return hints

    def propose_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.proposed_checkpoint = checkpoint

    def report(  # noqa: PLR0913
        self,
        fraction: float,
        *,
        rate_bps: float | None = None,
        eta_seconds: float | None = None,
        downloaded_bytes: int | None = None,
        total_bytes: int | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> None:
        if checkpoint is not None:
            self.proposed_checkpoint = checkpoint
        if self._throughput is not None:
            self._throughput.observe(rate_bps)
        self._on_progress(
            StageProgressReport(
                task_id=self.task.task_id,
                stage_name=self.stage_name,
                stage_index=self.task.stage_index,
                checkpoint_epoch=self.task.checkpoint_epoch,
                fraction=min(1.0, max(0.0, fraction)),
                rate_bps=rate_bps,
                eta_seconds=eta_seconds,
                downloaded_bytes=downloaded_bytes,
                total_bytes=total_bytes,
                checkpoint=checkpoint,
            ),
        )

    def safe_point(self) -> None:
        """Stop here if cancellation or a pause was requested."""

        self.token.raise_if_cancelled()
        if self.token.pause_requested:
            raise StagePaused(self.stage_name)
