"""Event-driven scheduler: admits queued tasks and drives their stages.

A single loop thread owns every task mutation. Stage work runs on a bounded
thread pool and reports back through the loop's inbox, so progress folding,
stage advancement and retry decisions never race each other. Public methods
called from other threads are marshalled onto the loop while it runs.
"""

from __future__ import annotations

import heapq
import logging
import os
import queue
import socket
import threading
import time
from collections.abc import Callable, Collection
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from media_tasks.orchestrator.collaborators import StopToken
from media_tasks.orchestrator.errors import InvalidStateTransition
from media_tasks.orchestrator.events import (
    EventBus,
    EventCallback,
    ProgressEvent,
    StageTransitionEvent,
    TerminalEvent,
)
from media_tasks.orchestrator.executor import StageExecutor, StageResult
from media_tasks.orchestrator.models import (
    CheckpointKind,
    ControlRequest,
    FailureClass,
    FailureRecordWrite,
    StageOutcome,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskView,
)
from media_tasks.orchestrator.progress import ProgressAggregator
from media_tasks.orchestrator.repository import TaskStore
from media_tasks.orchestrator.resume import ResumeManager, ResumePlan
from media_tasks.orchestrator.retry_policy import RetryPolicy, fetch_hints_after_advice
from media_tasks.orchestrator.stage_context import StageProgressReport
from media_tasks.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _Wake:
    reason: str


@dataclass(slots=True)
class _Progress:
    report: StageProgressReport


@dataclass(slots=True)
class _StageDone:
    task_id: str
    run_id: int
    future: Future[StageResult]


@dataclass(slots=True)
class _Call:
    fn: Callable[[], Any]
    future: Future[Any]


@dataclass(slots=True)
class _ActiveTask:
    task: TaskView
    token: StopToken = field(default_factory=StopToken)
    run_id: int = 0
    cancel_reason: str | None = None
    shutting_down: bool = False
    last_persist_at: float = float("-inf")
    last_checkpoint_at: float = 0.0


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class Scheduler:
    """Runs up to ``max_concurrent`` tasks, one stage at a time per task."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executor: StageExecutor,
        resume_manager: ResumeManager | None = None,
        retry_policy: RetryPolicy | None = None,
        aggregator: ProgressAggregator | None = None,
        events: EventBus | None = None,
        max_concurrent: int = 3,
        tick_seconds: float = 1.0,
        lease_stale_seconds: float = 30.0,
        progress_persist_seconds: float = 0.5,
        checkpoint_interval_seconds: float = 5.0,
        graceful_shutdown_seconds: float = 30.0,
        owner_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.store = store
        self.executor = executor
        self.resume_manager = resume_manager or ResumeManager()
        self.retry_policy = retry_policy or RetryPolicy()
        self.aggregator = aggregator or ProgressAggregator()
        self.events = events or EventBus()
        self.max_concurrent = max_concurrent
        self.tick_seconds = tick_seconds
        self.lease_stale_seconds = lease_stale_seconds
        self.progress_persist_seconds = progress_persist_seconds
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.owner_id = owner_id or default_owner_id()
        self._clock = clock
        self._now = now

        self._inbox: queue.Queue[_Wake | _Progress | _StageDone | _Call] = queue.Queue()
        self._active: dict[str, _ActiveTask] = {}
        self._retry_heap: list[tuple[float, str]] = []
        self._retry_due: dict[str, float] = {}
        self._pool: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._stop_requested = threading.Event()
        self._state_changed = threading.Condition()
        self._last_heartbeat = float("-inf")
        self._last_control_poll = float("-inf")

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Take the lease, recover interrupted work and start the loop thread."""

        if self._thread is not None:
            raise RuntimeError("Scheduler already started")
        self.store.acquire_lease(self.owner_id, stale_after_seconds=self.lease_stale_seconds)
        self._last_heartbeat = self._clock()
        for task_id in self.store.recover_interrupted():
            self.events.publish(
                StageTransitionEvent(task_id, TaskStatus.RUNNING, TaskStatus.QUEUED, None, None),
            )
        self._rearm_retries()
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent,
            thread_name_prefix="media-stage",
        )
        self._stop_requested.clear()
        self._thread = threading.Thread(target=self._loop, name="media-scheduler", daemon=True)
        self._thread.start()
        self.wake("started")
        logger.info(
            "Scheduler %s started (max_concurrent=%d)",
            self.owner_id,
            self.max_concurrent,
        )

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop admitting work, park running tasks back in the queue and release the lease."""

        thread = self._thread
        if thread is None:
            return
        self._stop_requested.set()
        self.wake("stop")
        grace = self.graceful_shutdown_seconds if timeout is None else timeout
        thread.join(grace + 5.0)
        if thread.is_alive():
            logger.error("Scheduler loop did not exit within %.0fs", grace + 5.0)
        self._thread = None
        logger.info("Scheduler %s stopped", self.owner_id)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wake(self, reason: str = "tick") -> None:
        self._inbox.put(_Wake(reason))

    # -- public operations -----------------------------------------------------

    def submit(self, payload: TaskCreate) -> TaskView:
        return self._call(lambda: self._submit(payload))

    def cancel(self, task_id: str, *, reason: str = "cancelled by request") -> TaskView:
        """Cancel a task; a running task stops once its process has exited."""

        return self._call(lambda: self._cancel(task_id, reason=reason))

    def pause(self, task_id: str) -> TaskView:
        """Ask a running task to stop at its next safe checkpoint."""

        return self._call(lambda: self._pause(task_id))

    def resume(self, task_id: str) -> TaskView:
        return self._call(lambda: self._resume(task_id))

    def retry(self, task_id: str) -> TaskView:
        return self._call(lambda: self._manual_retry(task_id))

    def list(self, task_filter: TaskFilter | None = None) -> list[TaskView]:
        return self.store.list_tasks(task_filter)

    def get(self, task_id: str) -> TaskView:
        return self.store.require_task(task_id)

    def subscribe(self, task_id: str | None, callback: EventCallback) -> Callable[[], None]:
        return self.events.subscribe(task_id, callback)

    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def wait_for_status(
        self,
        task_id: str,
        statuses: TaskStatus | Collection[TaskStatus],
        *,
        timeout: float = 30.0,
    ) -> TaskView:
        """Block until the task reaches one of ``statuses``; raises TimeoutError."""

        wanted = {statuses} if isinstance(statuses, TaskStatus) else set(statuses)
        deadline = time.monotonic() + timeout
        while True:
            task = self.store.require_task(task_id)
            if task.status in wanted:
                return task
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"Task {task_id} is {task.status.value}, expected "
                    f"{sorted(status.value for status in wanted)}",
                )
            with self._state_changed:
                self._state_changed.wait(min(remaining, 0.05))

    def wait_until_idle(self, *, timeout: float | None = None) -> bool:
        """Block until nothing is queued, running or waiting for a retry."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._is_idle():
                return True
            if self._stop_requested.is_set() and not self.running:
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            with self._state_changed:
                self._state_changed.wait(0.1)

    # -- loop ------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_requested.is_set():
            try:
                message = self._inbox.get(timeout=self._next_wait())
            except queue.Empty:
                message = None
            try:
                if message is not None:
                    self._dispatch(message)
                self._tick()
            except Exception:
                logger.exception("Scheduler loop iteration failed")
        try:
            self._shutdown()
        except Exception:
            logger.exception("Scheduler shutdown failed")

    def _dispatch(self, message: _Wake | _Progress | _StageDone | _Call) -> None:
        if isinstance(message, _Progress):
            self._on_progress(message.report)
        elif isinstance(message, _StageDone):
            self._on_stage_done(message)
        elif isinstance(message, _Call):
            try:
                message.future.set_result(message.fn())
            except Exception as error:  # noqa: BLE001
                message.future.set_exception(error)

    def _tick(self) -> None:
        now = self._clock()
        if now - self._last_heartbeat >= self.lease_stale_seconds / 3:
            if not self.store.heartbeat_lease(self.owner_id):
                logger.error("Scheduler %s lost its lease", self.owner_id)
            self._last_heartbeat = now
        if now - self._last_control_poll >= self.tick_seconds:
            self._apply_control_requests()
            self._last_control_poll = now
        self._release_due_retries(now)
        self._admit()

    def _next_wait(self) -> float:
        wait = self.tick_seconds
        if self._retry_heap:
            wait = min(wait, max(0.0, self._retry_heap[0][0] - self._clock()))
        return max(wait, 0.01)

    def _call(self, fn: Callable[[], T]) -> T:
        thread = self._thread
        if thread is None or not thread.is_alive() or threading.current_thread() is thread:
            return fn()
        future: Future[T] = Future()
        self._inbox.put(_Call(fn, future))
        return future.result()

    # -- admission -------------------------------------------------------------

    def _admit(self) -> None:
        while len(self._active) < self.max_concurrent and not self._stop_requested.is_set():
            ready = self.store.next_ready(limit=1, exclude=tuple(self._active))
            if not ready:
                return
            self._start(ready[0])

    def _start(self, task: TaskView) -> None:
        plan = self.resume_manager.prepare(task)
        stage_index = task.stage_index
        if plan.rewind_to_stage is not None:
            stage_index = plan.rewind_to_stage
        epoch = task.checkpoint_epoch + (1 if plan.restart_from_zero else 0)
        fraction = 0.0
        if not plan.restart_from_zero and plan.checkpoint is not None:
            if plan.checkpoint.kind == CheckpointKind.BYTES and plan.checkpoint.total_bytes:
                fraction = plan.checkpoint.bytes_confirmed / plan.checkpoint.total_bytes
        snapshot = self.aggregator.register(
            task.task_id,
            kind=task.kind,
            stages=task.stages,
            stage_index=stage_index,
            epoch=epoch,
            stage_fraction=fraction,
        )
        try:
            started = self.store.start_task(
                task.task_id,
                owner_id=self.owner_id,
                stage_index=stage_index,
                checkpoint=None if plan.restart_from_zero else plan.checkpoint,
                restart_from_zero=plan.restart_from_zero,
                reason=plan.reason,
                overall_progress=snapshot.overall_fraction,
            )
        except (InvalidStateTransition, RuntimeError) as error:
            logger.warning("Task %s could not be started: %s", task.task_id, error)
            self.aggregator.forget(task.task_id)
            return
        logger.info(
            "Task %s started at %s (%s)",
            started.task_id,
            started.current_stage,
            plan.reason,
        )
        self._publish(
            StageTransitionEvent(
                started.task_id,
                TaskStatus.QUEUED,
                TaskStatus.RUNNING,
                None,
                started.current_stage,
            ),
        )
        active = _ActiveTask(task=started)
        self._active[started.task_id] = active
        self._launch(active, plan)

    def _launch(self, active: _ActiveTask, plan: ResumePlan) -> None:
        if self._pool is None:
            raise RuntimeError("Scheduler is not started")
        if active.token.cancel_requested and active.cancel_reason is None:
            # A timed-out stage left the token cancelled; the next stage gets a fresh one.
            pause = active.token.pause_requested
            active.token = StopToken()
            if pause:
                active.token.signal(ControlRequest.PAUSE)
        active.run_id += 1
        active.last_checkpoint_at = self._clock()
        task = active.task
        run_id = active.run_id
        future = self._pool.submit(
            self.executor.run,
            task,
            task.current_stage,
            plan,
            token=active.token,
            on_progress=self._post_progress,
        )
        future.add_done_callback(
            lambda done: self._inbox.put(_StageDone(task.task_id, run_id, done)),
        )

    def _post_progress(self, report: StageProgressReport) -> None:
        self._inbox.put(_Progress(report))

    # -- stage results ---------------------------------------------------------

    def _on_progress(self, report: StageProgressReport) -> None:
        active = self._active.get(report.task_id)
        if active is None:
            return
        task = active.task
        if (
            report.stage_index != task.stage_index
            or report.checkpoint_epoch != task.checkpoint_epoch
        ):
            return
        snapshot = self.aggregator.on_stage_progress(
            report.task_id,
            report.stage_name,
            report.fraction,
            report.rate_bps,
            report.eta_seconds,
            downloaded_bytes=report.downloaded_bytes,
            total_bytes=report.total_bytes,
        )
        if snapshot is None:
            return
        self._publish(ProgressEvent(report.task_id, snapshot))
        now = self._clock()
        if now - active.last_persist_at >= self.progress_persist_seconds or report.fraction >= 1.0:
            self.store.update_progress(
                report.task_id,
                stage_index=task.stage_index,
                checkpoint_epoch=task.checkpoint_epoch,
                progress=snapshot.stage_fraction,
                overall_progress=snapshot.overall_fraction,
                downloaded_bytes=snapshot.downloaded_bytes,
                total_bytes=snapshot.total_bytes,
                rate_bps=snapshot.rate_bps,
                eta_seconds=snapshot.eta_seconds,
            )
            active.last_persist_at = now
        checkpoint = report.checkpoint
        if (
            checkpoint is not None
            and checkpoint.kind == CheckpointKind.BYTES
            and now - active.last_checkpoint_at >= self.checkpoint_interval_seconds
        ):
            confirmed = self.resume_manager.confirm(task, checkpoint, truncate=False)
            if confirmed is not None:
                self.store.save_checkpoint(report.task_id, confirmed)
            active.last_checkpoint_at = now

    def _on_stage_done(self, message: _StageDone) -> None:
        active = self._active.get(message.task_id)
        if active is None or active.run_id != message.run_id:
            return
        try:
            result = message.future.result()
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s: stage executor crashed", message.task_id)
            result = StageResult(
                outcome=StageOutcome.FAILED,
                stage=active.task.current_stage,
                error=error,
            )

        try:
            self._apply_result(active, result)
        except Exception as error:
            logger.exception(
                "Task %s: handling %s result of %s failed",
                message.task_id,
                result.outcome.value,
                result.stage,
            )
            self._abort(active, error)
        finally:
            self._notify()

    def _apply_result(self, active: _ActiveTask, result: StageResult) -> None:
        if active.cancel_reason is not None:
            self._finish_cancelled(active, reason=active.cancel_reason)
        elif active.shutting_down and result.outcome != StageOutcome.SUCCEEDED:
            self._park_for_shutdown(active, result)
        elif result.outcome == StageOutcome.SUCCEEDED:
            self._on_stage_succeeded(active, result)
        elif result.outcome == StageOutcome.PAUSED:
            self._finish_paused(active, result)
        elif result.outcome == StageOutcome.CANCELLED:
            self._finish_cancelled(active, reason=str(result.error or "cancelled"))
        else:
            self._on_stage_failed(active, result)

    def _abort(self, active: _ActiveTask, error: Exception) -> None:
        """Fail a task whose result could not be applied and free its slot."""

        task_id = active.task.task_id
        reason = f"internal error: {error}"
        active.token.signal(ControlRequest.CANCEL)
        try:
            current = self.store.require_task(task_id)
            if current.status != TaskStatus.RUNNING:
                return
            failed = self.store.fail_task(
                task_id,
                failure=FailureRecordWrite(
                    stage=current.current_stage,
                    stage_index=current.stage_index,
                    failure_class=FailureClass.INTERNAL,
                    reason=reason,
                    progress_at_failure=current.overall_progress,
                    retry_count=current.retry_count,
                    retryable=False,
                ),
            )
        finally:
            self._release(active)
        self._publish(
            StageTransitionEvent(
                task_id,
                TaskStatus.RUNNING,
                TaskStatus.FAILED,
                current.current_stage,
                None,
            ),
        )
        self._publish(
            TerminalEvent(task_id, failed.status, reason=reason, stage=current.current_stage),
        )

    def _on_stage_succeeded(self, active: _ActiveTask, result: StageResult) -> None:
        task = active.task
        stage = task.current_stage
        snapshot = self.aggregator.complete_stage(task.task_id, stage)
        if snapshot is not None:
            self._publish(ProgressEvent(task.task_id, snapshot))
            self.store.update_progress(
                task.task_id,
                stage_index=task.stage_index,
                checkpoint_epoch=task.checkpoint_epoch,
                progress=1.0,
                overall_progress=snapshot.overall_fraction,
                downloaded_bytes=snapshot.downloaded_bytes,
                total_bytes=snapshot.total_bytes,
            )

        if task.is_last_stage:
            completed = self.store.complete_task(task.task_id, artifacts=result.artifacts)
            self._release(active)
            self.executor.workdirs.cleanup(task.task_id)
            logger.info("Task %s completed", task.task_id)
            self._publish(
                StageTransitionEvent(
                    task.task_id,
                    TaskStatus.RUNNING,
                    TaskStatus.COMPLETED,
                    stage,
                    None,
                ),
            )
            self._publish(TerminalEvent(task.task_id, completed.status, stage=stage))
            return

        advanced = self.store.advance_stage(task.task_id, artifacts=result.artifacts)
        active.task = advanced
        logger.info("Task %s: %s done, next %s", task.task_id, stage, advanced.current_stage)
        self._publish(
            StageTransitionEvent(
                task.task_id,
                TaskStatus.RUNNING,
                TaskStatus.RUNNING,
                stage,
                advanced.current_stage,
            ),
        )
        if active.shutting_down:
            self._requeue(active, reason="scheduler shutdown")
            return
        if active.token.pause_requested:
            paused = self.store.pause_task(task.task_id, checkpoint=None)
            self._release(active)
            self._publish(
                StageTransitionEvent(
                    task.task_id,
                    TaskStatus.RUNNING,
                    paused.status,
                    advanced.current_stage,
                    advanced.current_stage,
                ),
            )
            return
        plan = self.resume_manager.prepare(advanced)
        if plan.rewind_to_stage is not None and plan.rewind_to_stage != advanced.stage_index:
            self._requeue(active, reason=plan.reason)
            return
        self._launch(active, plan)

    def _on_stage_failed(self, active: _ActiveTask, result: StageResult) -> None:
        task = active.task
        error = result.error or RuntimeError(f"Stage {result.stage} failed")
        decision = self.retry_policy.classify(
            error,
            attempt=task.retry_count + 1,
            advice=result.advice,
            current_options=task.options,
        )
        snapshot = self.aggregator.snapshot(task.task_id)
        will_retry = decision.retryable and task.retry_count < task.max_retries
        failure = FailureRecordWrite(
            stage=result.stage,
            stage_index=task.stage_index,
            failure_class=decision.failure_class,
            reason=decision.reason,
            progress_at_failure=snapshot.overall_fraction if snapshot else task.overall_progress,
            retry_count=task.retry_count,
            retryable=will_retry,
        )
        if not will_retry:
            failed = self.store.fail_task(task.task_id, failure=failure)
            self._release(active)
            logger.warning(
                "Task %s failed at %s (%s): %s",
                task.task_id,
                result.stage,
                decision.failure_class.value,
                decision.reason,
            )
            self._publish(
                StageTransitionEvent(
                    task.task_id,
                    TaskStatus.RUNNING,
                    TaskStatus.FAILED,
                    result.stage,
                    None,
                ),
            )
            self._publish(
                TerminalEvent(
                    task.task_id,
                    failed.status,
                    reason=decision.reason,
                    stage=result.stage,
                ),
            )
            return

        checkpoint = None
        if decision.restart_from_zero:
            if result.checkpoint is not None and result.checkpoint.partial_path:
                Path(result.checkpoint.partial_path).unlink(missing_ok=True)
        else:
            checkpoint = self.resume_manager.confirm(task, result.checkpoint)
        options = None
        if result.advice is not None:
            options = {
                **task.options,
                "fetch_hints": fetch_hints_after_advice(task.options, result.advice),
            }
            logger.info(
                "Task %s: slow transfer (%.0f B/s), next attempt uses %s",
                task.task_id,
                result.advice.observed_rate_bps,
                options["fetch_hints"],
            )
        next_attempt_at = self._now() + timedelta(seconds=decision.delay_seconds)
        retrying = self.store.schedule_retry(
            task.task_id,
            failure=failure,
            next_attempt_at=next_attempt_at,
            checkpoint=checkpoint,
            restart_from_zero=decision.restart_from_zero,
            options=options,
        )
        self._release(active)
        self._arm_retry(task.task_id, self._clock() + decision.delay_seconds)
        logger.warning(
            "Task %s: %s at %s, retry %d/%d in %.0fs (%s)",
            task.task_id,
            decision.failure_class.value,
            result.stage,
            retrying.retry_count,
            retrying.max_retries,
            decision.delay_seconds,
            decision.strategy.value,
        )
        self._publish(
            StageTransitionEvent(
                task.task_id,
                TaskStatus.RUNNING,
                TaskStatus.RETRYING,
                result.stage,
                result.stage,
            ),
        )

    def _finish_paused(self, active: _ActiveTask, result: StageResult) -> None:
        task = active.task
        checkpoint = self.resume_manager.confirm(task, result.checkpoint)
        paused = self.store.pause_task(task.task_id, checkpoint=checkpoint)
        self._release(active)
        logger.info(
            "Task %s paused at %s (%s)",
            task.task_id,
            task.current_stage,
            f"{checkpoint.bytes_confirmed} bytes" if checkpoint else "stage start",
        )
        self._publish(
            StageTransitionEvent(
                task.task_id,
                TaskStatus.RUNNING,
                paused.status,
                task.current_stage,
                task.current_stage,
            ),
        )

    def _finish_cancelled(self, active: _ActiveTask, *, reason: str) -> None:
        task = active.task
        cancelled = self.store.cancel_task(task.task_id, reason=reason)
        self._release(active)
        logger.info("Task %s cancelled at %s", task.task_id, task.current_stage)
        self._publish(
            StageTransitionEvent(
                task.task_id,
                TaskStatus.RUNNING,
                TaskStatus.CANCELLED,
                task.current_stage,
                None,
            ),
        )
        self._publish(
            TerminalEvent(task.task_id, cancelled.status, reason=reason, stage=task.current_stage),
        )

    def _park_for_shutdown(self, active: _ActiveTask, result: StageResult) -> None:
        checkpoint = self.resume_manager.confirm(active.task, result.checkpoint)
        if checkpoint is not None:
            self.store.save_checkpoint(active.task.task_id, checkpoint)
        self._requeue(active, reason="scheduler shutdown")

    def _requeue(self, active: _ActiveTask, *, reason: str) -> None:
        task = self.store.requeue_task(active.task.task_id, reason=reason)
        self._release(active)
        self._publish(
            StageTransitionEvent(
                task.task_id,
                TaskStatus.RUNNING,
                TaskStatus.QUEUED,
                task.current_stage,
                task.current_stage,
            ),
        )

    def _release(self, active: _ActiveTask) -> None:
        self._active.pop(active.task.task_id, None)
        self.aggregator.forget(active.task.task_id)

    # -- retries and control requests -------------------------------------------

    def _rearm_retries(self) -> None:
        now = self._now()
        waiting = self.store.list_tasks(
            TaskFilter(statuses=(TaskStatus.RETRYING,), limit=10_000),
        )
        for task in waiting:
            delay = 0.0
            if task.next_attempt_at is not None:
                delay = max(
                    0.0,
                    (to_utc_aware_datetime(task.next_attempt_at) - now).total_seconds(),
                )
            self._arm_retry(task.task_id, self._clock() + delay)

    def _arm_retry(self, task_id: str, due: float) -> None:
        # Only the latest countdown of a task may release it.
        self._retry_due[task_id] = due
        heapq.heappush(self._retry_heap, (due, task_id))

    def _release_due_retries(self, now: float) -> None:
        while self._retry_heap and self._retry_heap[0][0] <= now:
            due, task_id = heapq.heappop(self._retry_heap)
            if self._retry_due.get(task_id) != due:
                continue
            del self._retry_due[task_id]
            task = self.store.get_task(task_id)
            if task is None or task.status != TaskStatus.RETRYING:
                continue
            self.store.release_retry(task_id)
            self._publish(
                StageTransitionEvent(
                    task_id,
                    TaskStatus.RETRYING,
                    TaskStatus.QUEUED,
                    task.current_stage,
                    task.current_stage,
                ),
            )

    def _apply_control_requests(self) -> None:
        for task_id, request in self.store.pending_controls():
            active = self._active.get(task_id)
            if active is not None:
                if request == ControlRequest.CANCEL:
                    active.cancel_reason = active.cancel_reason or "cancelled by request"
                logger.info("Task %s: applying %s request", task_id, request.value)
                active.token.signal(request)
            self.store.clear_control(task_id)

    # -- operation bodies (loop thread) ------------------------------------------

    def _submit(self, payload: TaskCreate) -> TaskView:
        task = self.store.create_task(payload)
        logger.info("Task %s submitted (%s: %s)", task.task_id, task.kind.value, task.stages)
        self._publish(
            StageTransitionEvent(task.task_id, None, TaskStatus.QUEUED, None, task.current_stage),
        )
        self.wake("submitted")
        return task

    def _cancel(self, task_id: str, *, reason: str) -> TaskView:
        task = self.store.require_task(task_id)
        active = self._active.get(task_id)
        if active is not None:
            active.cancel_reason = reason
            active.token.signal(ControlRequest.CANCEL)
            return task
        if task.status == TaskStatus.RUNNING:
            # Owned by another scheduler process.
            self.store.request_control(task_id, ControlRequest.CANCEL)
            return task
        cancelled = self.store.cancel_task(task_id, reason=reason)
        self._publish(
            StageTransitionEvent(
                task_id,
                task.status,
                TaskStatus.CANCELLED,
                task.current_stage,
                None,
            ),
        )
        self._publish(
            TerminalEvent(task_id, cancelled.status, reason=reason, stage=task.current_stage),
        )
        return cancelled

    def _pause(self, task_id: str) -> TaskView:
        task = self.store.require_task(task_id)
        if task.status != TaskStatus.RUNNING:
            raise InvalidStateTransition(task_id, task.status, TaskStatus.PAUSED)
        active = self._active.get(task_id)
        if active is not None:
            active.token.signal(ControlRequest.PAUSE)
        else:
            self.store.request_control(task_id, ControlRequest.PAUSE)
        return task

    def _resume(self, task_id: str) -> TaskView:
        task = self.store.resume_task(task_id)
        self._publish(
            StageTransitionEvent(
                task_id,
                TaskStatus.PAUSED,
                TaskStatus.QUEUED,
                task.current_stage,
                task.current_stage,
            ),
        )
        self.wake("resumed")
        return task

    def _manual_retry(self, task_id: str) -> TaskView:
        previous = self.store.require_task(task_id).status
        task = self.store.manual_retry(task_id)
        self._publish(
            StageTransitionEvent(
                task_id,
                previous,
                TaskStatus.QUEUED,
                task.current_stage,
                task.current_stage,
            ),
        )
        self.wake("retry")
        return task

    # -- shutdown ----------------------------------------------------------------

    def _shutdown(self) -> None:
        deadline = self._clock() + self.graceful_shutdown_seconds
        for active in self._active.values():
            active.shutting_down = True
            active.token.signal(ControlRequest.PAUSE)
        cancelled_all = False
        while self._active:
            remaining = deadline - self._clock()
            if remaining <= 0 and not cancelled_all:
                logger.warning(
                    "Stopping %d stage(s) that did not reach a safe point",
                    len(self._active),
                )
                for active in self._active.values():
                    active.token.signal(ControlRequest.CANCEL)
                cancelled_all = True
                deadline = self._clock() + self.graceful_shutdown_seconds
                continue
            if remaining <= 0:
                break
            try:
                message = self._inbox.get(timeout=min(remaining, 0.1))
            except queue.Empty:
                continue
            if isinstance(message, _Call):
                message.future.set_exception(RuntimeError("Scheduler is stopping"))
                continue
            self._dispatch(message)
        for active in list(self._active.values()):
            logger.error("Task %s did not stop; returning it to the queue", active.task.task_id)
            self._requeue(active, reason="scheduler shutdown")
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(message, _Call):
                message.future.set_exception(RuntimeError("Scheduler is stopping"))
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None
        self.store.release_lease(self.owner_id)
        self._notify()

    # -- helpers -------------------------------------------------------------------

    def _is_idle(self) -> bool:
        if self._active:
            return False
        stats = self.store.stats()
        return stats.queued == 0 and stats.running == 0 and stats.retrying == 0

    def _publish(self, event: ProgressEvent | StageTransitionEvent | TerminalEvent) -> None:
        self.events.publish(event)
        if not isinstance(event, ProgressEvent):
            self._notify()

    def _notify(self) -> None:
        with self._state_changed:
            self._state_changed.notify_all()

