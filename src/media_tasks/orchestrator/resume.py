"""Checkpoint validation against on-disk partial artifacts."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from media_tasks.orchestrator.models import Checkpoint, CheckpointKind, TaskView
from media_tasks.orchestrator.stages import PASS_STAGES, STAGE_PASS1

logger = logging.getLogger(__name__)

DEFAULT_FINGERPRINT_WINDOW = 1024 * 1024
_READ_CHUNK = 64 * 1024


class ResumeMode(str, Enum):
    START_AT_CHECKPOINT = "start_at_checkpoint"
    RESTART_FROM_ZERO = "restart_from_zero"


@dataclass(slots=True)
class ResumePlan:
    """Where a stage starts on its next attempt."""

    mode: ResumeMode
    reason: str
    checkpoint: Checkpoint | None = None
    byte_offset: int = 0
    pass_number: int | None = None
    rewind_to_stage: int | None = None

    @property
    def restart_from_zero(self) -> bool:
        return self.mode == ResumeMode.RESTART_FROM_ZERO


class ResumeManager:
    """Decides whether a stage continues from its checkpoint or restarts."""

    def __init__(self, *, fingerprint_window: int = DEFAULT_FINGERPRINT_WINDOW) -> None:
        self.fingerprint_window = fingerprint_window

    def prepare(self, task: TaskView) -> ResumePlan:
        """Pick the starting point of the task's current stage.

        Byte checkpoints need a partial file whose size and trailing-window
        fingerprint match the record; anything else restarts the stage from
        zero and discards the partial. Pass checkpoints re-enter at the
        recorded pass after discarding that pass's partial output. A second
        pass whose pass log disappeared rewinds the task to the first pass.
        """

        stage = task.current_stage
        checkpoint = task.checkpoint
        pass_number = PASS_STAGES.get(stage)
        if pass_number is not None and pass_number > 1:
            passlog = (checkpoint.passlog_path if checkpoint else None) or task.artifacts.get(
                "passlog_path",
            )
            if not passlog or not _passlog_exists(str(passlog)):
                _discard(checkpoint.partial_path if checkpoint else None)
                rewind = task.stages.index(STAGE_PASS1) if STAGE_PASS1 in task.stages else None
                logger.warning("Task %s: pass log missing, rewinding to first pass", task.task_id)
                return ResumePlan(
                    mode=ResumeMode.RESTART_FROM_ZERO,
                    reason="passlog_missing",
                    rewind_to_stage=rewind,
                    pass_number=1,
                )

        if checkpoint is None:
            return ResumePlan(
                mode=ResumeMode.RESTART_FROM_ZERO,
                reason="no_checkpoint",
                pass_number=pass_number,
            )
        if checkpoint.stage != stage:
            _discard(checkpoint.partial_path)
            return ResumePlan(mode=ResumeMode.RESTART_FROM_ZERO, reason="stage_mismatch")

        if checkpoint.kind == CheckpointKind.PASS:
            _discard(checkpoint.partial_path)
            return ResumePlan(
                mode=ResumeMode.START_AT_CHECKPOINT,
                reason="pass_checkpoint",
                checkpoint=checkpoint,
                pass_number=checkpoint.pass_number or pass_number,
            )
        return self._prepare_bytes(task, checkpoint)

    def confirm(
        self,
        task: TaskView,
        proposed: Checkpoint | None,
        *,
        truncate: bool = True,
    ) -> Checkpoint | None:
        """Validate a checkpoint offered by a stage before it is persisted.

        Pass ``truncate=False`` while the stage is still writing the partial.
        """

        if proposed is None:
            return None
        if proposed.kind == CheckpointKind.PASS:
            if (proposed.pass_number or 1) > 1 and (
                not proposed.passlog_path or not _passlog_exists(proposed.passlog_path)
            ):
                logger.warning("Task %s: dropping pass checkpoint without pass log", task.task_id)
                return None
            return proposed

        if not proposed.partial_path:
            return None
        partial = Path(proposed.partial_path)
        if not partial.is_file():
            return None
        size = partial.stat().st_size
        confirmed = min(proposed.bytes_confirmed, size)
        if proposed.total_bytes is not None:
            confirmed = min(confirmed, proposed.total_bytes)
        if confirmed <= 0:
            return None
        if truncate and size > confirmed:
            os.truncate(partial, confirmed)
        window = min(self.fingerprint_window, confirmed)
        return Checkpoint(
            kind=CheckpointKind.BYTES,
            stage=proposed.stage,
            bytes_confirmed=confirmed,
            total_bytes=proposed.total_bytes,
            partial_path=str(partial),
            fingerprint=fingerprint_region(partial, end=confirmed, window=window),
            fingerprint_window=window,
        )

    def _prepare_bytes(self, task: TaskView, checkpoint: Checkpoint) -> ResumePlan:
        partial = Path(checkpoint.partial_path) if checkpoint.partial_path else None
        if partial is None or not partial.is_file():
            return ResumePlan(mode=ResumeMode.RESTART_FROM_ZERO, reason="partial_missing")
        size = partial.stat().st_size
        if size < checkpoint.bytes_confirmed:
            logger.warning(
                "Task %s: partial is %d bytes, checkpoint says %d; restarting",
                task.task_id,
                size,
                checkpoint.bytes_confirmed,
            )
            _discard(str(partial))
            return ResumePlan(mode=ResumeMode.RESTART_FROM_ZERO, reason="size_mismatch")
        if size > checkpoint.bytes_confirmed:
            # Bytes written after the last confirmation are not trusted.
            os.truncate(partial, checkpoint.bytes_confirmed)
        if checkpoint.fingerprint:
            window = checkpoint.fingerprint_window or min(
                self.fingerprint_window,
                checkpoint.bytes_confirmed,
            )
            actual = fingerprint_region(partial, end=checkpoint.bytes_confirmed, window=window)
            if actual != checkpoint.fingerprint:
                logger.warning("Task %s: partial fingerprint mismatch; restarting", task.task_id)
                _discard(str(partial))
                return ResumePlan(mode=ResumeMode.RESTART_FROM_ZERO, reason="fingerprint_mismatch")
        return ResumePlan(
            mode=ResumeMode.START_AT_CHECKPOINT,
            reason="byte_checkpoint",
            checkpoint=checkpoint,
            byte_offset=checkpoint.bytes_confirmed,
        )


def fingerprint_region(path: Path, *, end: int, window: int) -> str:
    """sha256 over the ``window`` bytes that end at offset ``end``."""

    start = max(0, end - window)
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        handle.seek(start)
        remaining = end - start
        while remaining > 0:
            chunk = handle.read(min(_READ_CHUNK, remaining))
            if not chunk:
                break
            digest.update(chunk)
            remaining -= len(chunk)
    return digest.hexdigest()


def _passlog_exists(passlog_prefix: str) -> bool:
    # ffmpeg appends "-0.log" to the -passlogfile prefix.
    prefix = Path(passlog_prefix)
    if prefix.is_file():
        return True
    return any(prefix.parent.glob(f"{prefix.name}-*.log")) if prefix.parent.is_dir() else False


def _discard(path: str | None) -> None:
    if not path:
        return
    Path(path).unlink(missing_ok=True)
