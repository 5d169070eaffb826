"""Runs one stage of one task and reports a uniform result."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from media_tasks.orchestrator.collaborators import Collaborators, StopToken
from media_tasks.orchestrator.errors import StageTimeoutError, TaskCancelledError, ValidationError
from media_tasks.orchestrator.models import Checkpoint, ControlRequest, StageOutcome, TaskView
from media_tasks.orchestrator.resume import ResumePlan
from media_tasks.orchestrator.retry_policy import ThroughputAdvice, ThroughputMonitor
from media_tasks.orchestrator.stage_context import ProgressSink, StageContext, StagePaused
from media_tasks.orchestrator.stage_handlers import STAGE_HANDLERS, StageHandler
from media_tasks.orchestrator.stages import STAGE_TRANSFER
from media_tasks.orchestrator.workdir import TaskWorkdirManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageResult:
    """Outcome of one stage run.

    ``checkpoint`` is the last position the stage proposed; it still has to be
    confirmed against disk before it is persisted.
    """

    outcome: StageOutcome
    stage: str
    artifacts: dict[str, Any] = field(default_factory=dict)
    checkpoint: Checkpoint | None = None
    error: BaseException | None = None
    advice: ThroughputAdvice | None = None


class StageExecutor:
    """Dispatches a stage to its handler under a timeout and a stop token."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        collaborators: Collaborators,
        workdirs: TaskWorkdirManager,
        handlers: Mapping[str, StageHandler] | None = None,
        stage_timeouts: Mapping[str, float] | None = None,
        slow_rate_bps: float = 0.0,
        slow_window_seconds: float = 60.0,
        translation_batch_size: int = 50,
    ) -> None:
        self.collaborators = collaborators
        self.workdirs = workdirs
        self.handlers = dict(handlers if handlers is not None else STAGE_HANDLERS)
        self.stage_timeouts = dict(stage_timeouts or {})
        self.slow_rate_bps = slow_rate_bps
        self.slow_window_seconds = slow_window_seconds
        self.translation_batch_size = translation_batch_size

    def run(  # noqa: PLR0913
        self,
        task: TaskView,
        stage_name: str,
        plan: ResumePlan,
        *,
        token: StopToken,
        on_progress: ProgressSink,
    ) -> StageResult:
        handler = self.handlers.get(stage_name)
        if handler is None:
            return StageResult(
                outcome=StageOutcome.FAILED,
                stage=stage_name,
                error=ValidationError(f"No handler for stage {stage_name!r}"),
            )

        throughput = None
        if stage_name == STAGE_TRANSFER and self.slow_rate_bps > 0:
            throughput = ThroughputMonitor(
                min_rate_bps=self.slow_rate_bps,
                window_seconds=self.slow_window_seconds,
            )
        ctx = StageContext(
            task=task,
            stage_name=stage_name,
            plan=plan,
            workdir=self.workdirs.for_task(task.task_id).ensure(),
            token=token,
            collaborators=self.collaborators,
            on_progress=on_progress,
            throughput=throughput,
            translation_batch_size=self.translation_batch_size,
        )

        timeout = self.stage_timeouts.get(stage_name)
        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if timeout:

            def _expire() -> None:
                timed_out.set()
                logger.warning(
                    "Task %s: stage %s exceeded %.0fs, stopping",
                    task.task_id,
                    stage_name,
                    timeout,
                )
                token.signal(ControlRequest.CANCEL)

            timer = threading.Timer(timeout, _expire)
            timer.daemon = True
            timer.start()

        try:
            artifacts = handler(ctx)
        except StagePaused:
            return self._result(ctx, StageOutcome.PAUSED)
        except TaskCancelledError as error:
            if timed_out.is_set():
                return self._result(
                    ctx,
                    StageOutcome.FAILED,
                    error=StageTimeoutError(
                        f"Stage {stage_name} timed out after {timeout:g}s",
                        timeout_seconds=float(timeout or 0),
                    ),
                )
            return self._result(ctx, StageOutcome.CANCELLED, error=error)
        except Exception as error:  # noqa: BLE001
            if token.cancel_requested and not timed_out.is_set():
                return self._result(ctx, StageOutcome.CANCELLED, error=error)
            logger.info("Task %s: stage %s failed: %s", task.task_id, stage_name, error)
            return self._result(ctx, StageOutcome.FAILED, error=error)
        finally:
            if timer is not None:
                timer.cancel()

        return StageResult(
            outcome=StageOutcome.SUCCEEDED,
            stage=stage_name,
            artifacts=dict(artifacts or {}),
            checkpoint=ctx.proposed_checkpoint,
            advice=ctx.advice,
        )

    def _result(
        self,
        ctx: StageContext,
        outcome: StageOutcome,
        *,
        error: BaseException | None = None,
    ) -> StageResult:
        return StageResult(
            outcome=outcome,
            stage=ctx.stage_name,
            checkpoint=ctx.proposed_checkpoint,
            error=error,
            advice=ctx.advice,
        )
