from __future__ import annotations

import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import FakeFetcher

from media_tasks.orchestrator.errors import (
    InvalidStateTransition,
    QuotaError,
    RateLimitError,
    SchedulerLockError,
    UnsupportedFormatError,
)
from media_tasks.orchestrator.events import ProgressEvent, StageTransitionEvent, TerminalEvent
from media_tasks.orchestrator.models import (
    TERMINAL_STATUSES,
    CheckpointKind,
    FailureClass,
    FailureRecordWrite,
    RetryStrategy,
    TaskCreate,
    TaskKind,
    TaskStatus,
)
from media_tasks.orchestrator.retry_policy import RetryPolicy
from media_tasks.storage.common import utc_now

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("Scheduler"),
]


def _fetch(tmp_path: Path, name: str = "clip", **kwargs) -> TaskCreate:
    return TaskCreate(
        kind=TaskKind.FETCH,
        stages=("info", "transfer", "merge"),
        destination_path=str(tmp_path / "out" / f"{name}.mp4"),
        source_ref=f"https://media.example/{name}",
        **kwargs,
    )


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def _progress(events, stage: str | None = None):
    return [
        event.progress
        for event in events
        if isinstance(event, ProgressEvent)
        and (stage is None or event.progress.stage_name == stage)
    ]


def test_fetch_task_reaches_completed_with_full_progress(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    collaborators.fetcher = FakeFetcher(
        total_bytes=100_000_000,
        points=(0.10, 0.25, 0.50, 0.75, 1.0),
    )
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.COMPLETED
    assert done.progress == 1.0
    assert done.overall_progress == 1.0
    assert Path(done.destination_path).stat().st_size == 100_000_000
    assert done.artifacts["output_path"] == done.destination_path
    assert not (tmp_path / "work" / task.task_id).exists()

    overall = [sample.overall_fraction for sample in _progress(events)]
    assert overall == sorted(overall)
    assert overall[-1] == 1.0
    transferred = [
        sample.downloaded_bytes
        for sample in _progress(events, "transfer")
        if sample.downloaded_bytes is not None
    ]
    assert sorted(set(transferred)) == [10_000_000, 25_000_000, 50_000_000, 75_000_000, 100_000_000]
    assert transferred == sorted(transferred)

    terminal = [event for event in events if isinstance(event, TerminalEvent)]
    assert [(event.task_id, event.status) for event in terminal] == [
        (task.task_id, TaskStatus.COMPLETED),
    ]
    history = store.list_history()
    assert [(entry.task_id, entry.status) for entry in history] == [
        (task.task_id, TaskStatus.COMPLETED),
    ]


def test_transient_failure_resumes_transfer_at_confirmed_bytes(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher(total_bytes=10_000_000, fail_after_chunks=4)
    collaborators.fetcher = fetcher
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.COMPLETED
    assert done.retry_count == 1
    assert [call["byte_offset"] for call in fetcher.calls] == [0, 4_000_000]

    fractions = [sample.stage_fraction for sample in _progress(events, "transfer")]
    assert fractions[:5] == pytest.approx([0.1, 0.2, 0.3, 0.4, 0.5])
    assert fractions == sorted(fractions)
    overall = [sample.overall_fraction for sample in _progress(events)]
    assert overall == sorted(overall)

    failures = store.list_failures(task.task_id)
    assert len(failures) == 1
    assert failures[0].failure_class == FailureClass.TRANSIENT_IO
    assert failures[0].stage == "transfer"
    assert failures[0].retryable is True
    statuses = [
        event.status_to
        for event in events
        if isinstance(event, StageTransitionEvent) and event.status_to != TaskStatus.RUNNING
    ]
    assert TaskStatus.RETRYING in statuses


def test_pause_keeps_checkpoint_and_resume_continues_from_it(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher(total_bytes=1_000_000)
    fetcher.hold_after = 4
    collaborators.fetcher = fetcher
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path))
    assert fetcher.reached.wait(10)
    scheduler.pause(task.task_id)
    fetcher.release.set()

    paused = scheduler.wait_for_status(task.task_id, TaskStatus.PAUSED)
    assert paused.checkpoint is not None
    assert paused.checkpoint.kind == CheckpointKind.BYTES
    assert paused.checkpoint.bytes_confirmed == 400_000
    assert paused.checkpoint.fingerprint
    partial = tmp_path / "work" / task.task_id / "partial" / "media.download"
    assert partial.stat().st_size == 400_000
    assert task.task_id not in scheduler.active_task_ids()

    resumed = scheduler.resume(task.task_id)
    assert resumed.status == TaskStatus.QUEUED
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.COMPLETED
    assert [call["byte_offset"] for call in fetcher.calls] == [0, 400_000]
    fractions = [sample.stage_fraction for sample in _progress(events, "transfer")]
    after_pause = fractions[fractions.index(0.4) + 1 :]
    assert after_pause
    assert min(after_pause) >= 0.4


def test_two_pass_derive_reports_weighted_overall_progress(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"x" * 4_000)
    destination = tmp_path / "out" / "small.mp4"
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)
    scheduler.start()

    task = scheduler.submit(
        TaskCreate(
            kind=TaskKind.DERIVE,
            stages=("analyze", "pass1", "pass2", "finalize"),
            destination_path=str(destination),
            input_path=str(source),
            options={"crf": 23},
        ),
    )
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.COMPLETED
    assert destination.stat().st_size == 2_000
    assert done.artifacts["compression_ratio"] == 0.5
    passes = [params.pass_number for _, _, params in collaborators.transcoder.calls]
    assert passes == [1, 2]

    pass1_done = [
        sample.overall_fraction
        for sample in _progress(events, "pass1")
        if sample.stage_fraction == 1.0
    ]
    assert pass1_done
    assert pass1_done[-1] == pytest.approx(0.5)
    pass2_half = [
        sample.overall_fraction
        for sample in _progress(events, "pass2")
        if sample.stage_fraction == pytest.approx(0.5)
    ]
    assert pass2_half == [pytest.approx(0.725)]


def test_concurrency_bound_holds_fourth_task_until_a_slot_frees(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher()
    fetcher.gate = threading.Event()
    collaborators.fetcher = fetcher
    scheduler = make_scheduler(max_concurrent=3)
    scheduler.start()

    task_ids = [scheduler.submit(_fetch(tmp_path, f"clip{n}")).task_id for n in range(4)]
    _wait_until(lambda: store.stats().running == 3)
    time.sleep(0.2)

    stats = store.stats()
    assert stats.running == 3
    assert stats.queued == 1
    assert store.require_task(task_ids[3]).status == TaskStatus.QUEUED

    fetcher.gate.set()
    finished = [
        scheduler.wait_for_status(task_id, TERMINAL_STATUSES) for task_id in task_ids
    ]

    assert [task.status for task in finished] == [TaskStatus.COMPLETED] * 4
    assert fetcher.max_in_flight == 3
    first_freed = min(task.ended_at for task in finished[:3])
    assert finished[3].started_at >= first_freed


def test_rate_limit_backs_off_exponentially_then_fails(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    collaborators.fetcher = FakeFetcher(
        failures=[RateLimitError("HTTP Error 429: Too Many Requests") for _ in range(4)],
    )
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path, max_retries=3))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.FAILED
    assert done.retry_count == 3
    assert done.failure_class == FailureClass.RATE_LIMITED
    assert done.failure_stage == "transfer"
    assert done.last_error == "HTTP Error 429: Too Many Requests"

    decisions = scheduler.retry_policy.decisions
    assert [decision.strategy for decision in decisions] == [RetryStrategy.EXPONENTIAL] * 4
    assert [decision.delay_seconds for decision in decisions] == pytest.approx(
        [0.01, 0.02, 0.04, 0.08],
    )
    failures = store.list_failures(task.task_id)
    assert [failure.retryable for failure in failures] == [True, True, True, False]
    assert [failure.retry_count for failure in failures] == [0, 1, 2, 3]

    details = store.get_task_details(task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("retry_scheduled") == 3
    terminal = [event for event in events if isinstance(event, TerminalEvent)]
    assert [(event.status, event.reason, event.stage) for event in terminal] == [
        (TaskStatus.FAILED, "HTTP Error 429: Too Many Requests", "transfer"),
    ]


def test_fatal_failure_skips_remaining_retry_budget(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    collaborators.fetcher = FakeFetcher(failures=[UnsupportedFormatError("Unsupported URL")])
    scheduler = make_scheduler()
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path, max_retries=5))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.FAILED
    assert done.retry_count == 0
    assert done.failure_class == FailureClass.UNSUPPORTED_FORMAT
    history = store.list_history(status=TaskStatus.FAILED)
    assert history[0].reason == "Unsupported URL"
    assert history[0].stage_name == "transfer"


def test_checksum_mismatch_restarts_transfer_from_zero(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher()
    collaborators.fetcher = fetcher
    scheduler = make_scheduler()
    scheduler.start()

    task = scheduler.submit(
        _fetch(tmp_path, max_retries=1, options={"expected_sha256": "0" * 64}),
    )
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.FAILED
    assert done.failure_class == FailureClass.CORRUPTION
    assert [call["byte_offset"] for call in fetcher.calls] == [0, 0]
    assert done.checkpoint_epoch >= 1


def test_cancel_running_task_waits_for_stage_to_stop(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher()
    fetcher.hold_after = 2
    collaborators.fetcher = fetcher
    scheduler = make_scheduler()
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path))
    assert fetcher.reached.wait(10)
    pending = scheduler.cancel(task.task_id)
    assert pending.status == TaskStatus.RUNNING

    fetcher.release.set()
    cancelled = scheduler.wait_for_status(task.task_id, TaskStatus.CANCELLED)
    assert cancelled.ended_at is not None
    assert store.list_failures(task.task_id) == []
    with pytest.raises(InvalidStateTransition):
        scheduler.cancel(task.task_id)

    retried = scheduler.retry(task.task_id)
    assert retried.status == TaskStatus.QUEUED
    assert scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES).status == (
        TaskStatus.COMPLETED
    )
    with pytest.raises(InvalidStateTransition):
        scheduler.cancel(task.task_id)


def test_cancel_queued_task_without_running_scheduler(tmp_path, store, make_scheduler) -> None:
    scheduler = make_scheduler()
    events: list = []
    scheduler.subscribe(None, events.append)

    task = scheduler.submit(_fetch(tmp_path))
    cancelled = scheduler.cancel(task.task_id, reason="not needed")

    assert cancelled.status == TaskStatus.CANCELLED
    terminal = [event for event in events if isinstance(event, TerminalEvent)]
    assert [(event.status, event.reason) for event in terminal] == [
        (TaskStatus.CANCELLED, "not needed"),
    ]
    with pytest.raises(InvalidStateTransition):
        scheduler.cancel(task.task_id)


def test_pause_of_non_running_task_is_rejected(tmp_path, store, make_scheduler) -> None:
    scheduler = make_scheduler()
    task = scheduler.submit(_fetch(tmp_path))

    with pytest.raises(InvalidStateTransition):
        scheduler.pause(task.task_id)


def test_control_request_from_another_process_cancels_running_task(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher()
    fetcher.hold_after = 2
    collaborators.fetcher = fetcher
    owner = make_scheduler()
    owner.start()
    task = owner.submit(_fetch(tmp_path))
    assert fetcher.reached.wait(10)

    observer = make_scheduler()
    view = observer.cancel(task.task_id)
    assert view.status == TaskStatus.RUNNING
    _wait_until(lambda: store.pending_controls() == [])

    fetcher.release.set()
    assert owner.wait_for_status(task.task_id, TERMINAL_STATUSES).status == TaskStatus.CANCELLED


def test_stage_timeout_is_classified_as_transient_failure(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    collaborators.fetcher = FakeFetcher(chunk_delay=0.1)
    scheduler = make_scheduler(stage_timeouts={"transfer": 0.25})
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path, max_retries=0))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.FAILED
    assert done.failure_class == FailureClass.TRANSIENT_IO
    assert "timed out" in (done.last_error or "")


def test_slow_transfer_downgrades_next_attempt(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher(chunk_delay=0.02, fail_after_chunks=8)
    collaborators.fetcher = fetcher
    scheduler = make_scheduler(slow_rate_bps=2_000_000, slow_window_seconds=0.05)
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path, options={"quality": "best", "parallel_chunks": 4}))
    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)

    assert done.status == TaskStatus.COMPLETED
    assert fetcher.calls[0]["hints"]["quality"] == "best"
    assert fetcher.calls[1]["hints"]["quality"] == "1080p"
    assert fetcher.calls[1]["hints"]["parallel_chunks"] == 2
    assert done.options["fetch_hints"]["quality"] == "1080p"


def test_stop_parks_running_task_with_checkpoint(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    fetcher = FakeFetcher()
    fetcher.hold_after = 3
    collaborators.fetcher = fetcher
    scheduler = make_scheduler()
    scheduler.start()
    task = scheduler.submit(_fetch(tmp_path))
    assert fetcher.reached.wait(10)

    threading.Timer(0.2, fetcher.release.set).start()
    scheduler.stop(timeout=5.0)

    parked = store.require_task(task.task_id)
    assert parked.status == TaskStatus.QUEUED
    assert parked.checkpoint is not None
    assert parked.checkpoint.bytes_confirmed == 300
    assert store.current_lease_owner() is None

    successor = make_scheduler()
    successor.start()
    done = successor.wait_for_status(task.task_id, TERMINAL_STATUSES)
    assert done.status == TaskStatus.COMPLETED
    assert [call["byte_offset"] for call in fetcher.calls] == [0, 300]


def test_second_scheduler_cannot_take_a_live_lease(store, make_scheduler) -> None:
    first = make_scheduler()
    first.start()
    second = make_scheduler()

    with pytest.raises(SchedulerLockError):
        second.start()

    first.stop()
    second.start()
    assert store.current_lease_owner() == second.owner_id


def test_start_recovers_tasks_left_running(tmp_path, store, make_scheduler) -> None:
    task = store.create_task(_fetch(tmp_path))
    store.start_task(
        task.task_id,
        owner_id="crashed-host:1:deadbeef",
        stage_index=0,
        checkpoint=None,
        restart_from_zero=True,
        reason="no_checkpoint",
    )

    scheduler = make_scheduler()
    scheduler.start()

    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)
    assert done.status == TaskStatus.COMPLETED
    details = store.get_task_details(task.task_id)
    assert details is not None
    assert "requeued" in [event.event_type for event in details.events]


def test_start_rearms_retry_countdown_from_store(tmp_path, store, make_scheduler) -> None:
    task = store.create_task(_fetch(tmp_path))
    store.start_task(
        task.task_id,
        owner_id="previous",
        stage_index=0,
        checkpoint=None,
        restart_from_zero=True,
        reason="no_checkpoint",
    )
    store.schedule_retry(
        task.task_id,
        failure=FailureRecordWrite(
            stage="info",
            stage_index=0,
            failure_class=FailureClass.REMOTE_SERVER,
            reason="HTTP Error 503",
            progress_at_failure=0.0,
            retry_count=0,
            retryable=True,
        ),
        next_attempt_at=utc_now() + timedelta(seconds=1),
        checkpoint=None,
        restart_from_zero=False,
    )
    store.release_lease("previous")

    scheduler = make_scheduler()
    scheduler.start()
    assert store.require_task(task.task_id).status == TaskStatus.RETRYING

    done = scheduler.wait_for_status(task.task_id, TERMINAL_STATUSES)
    assert done.status == TaskStatus.COMPLETED
    assert done.retry_count == 1


def test_higher_priority_task_is_admitted_first(tmp_path, store, collaborators, make_scheduler):
    scheduler = make_scheduler(max_concurrent=1)
    low = scheduler.submit(_fetch(tmp_path, "low"))
    high = scheduler.submit(_fetch(tmp_path, "high", priority=10))

    scheduler.start()
    low_done = scheduler.wait_for_status(low.task_id, TERMINAL_STATUSES)
    high_done = scheduler.wait_for_status(high.task_id, TERMINAL_STATUSES)

    assert high_done.ended_at <= low_done.started_at


def test_store_error_while_advancing_fails_task_and_frees_slot(
    tmp_path, store, monkeypatch, make_scheduler
) -> None:
    advance = store.advance_stage
    calls: list[str] = []

    def _advance_once_broken(task_id, **kwargs):
        calls.append(task_id)
        if len(calls) == 1:
            raise RuntimeError("database disk image is malformed")
        return advance(task_id, **kwargs)

    monkeypatch.setattr(store, "advance_stage", _advance_once_broken)
    scheduler = make_scheduler(max_concurrent=1)
    events: list = []
    scheduler.subscribe(None, events.append)
    first = scheduler.submit(_fetch(tmp_path, "first", priority=1))
    second = scheduler.submit(_fetch(tmp_path, "second"))
    scheduler.start()

    failed = scheduler.wait_for_status(first.task_id, TERMINAL_STATUSES)
    done = scheduler.wait_for_status(second.task_id, TERMINAL_STATUSES)

    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.INTERNAL
    assert failed.failure_stage == "info"
    assert failed.last_error == "internal error: database disk image is malformed"
    assert done.status == TaskStatus.COMPLETED
    failures = store.list_failures(first.task_id)
    assert [(failure.failure_class, failure.retryable) for failure in failures] == [
        (FailureClass.INTERNAL, False),
    ]
    terminal = [
        event
        for event in events
        if isinstance(event, TerminalEvent) and event.task_id == first.task_id
    ]
    assert [(event.status, event.stage) for event in terminal] == [(TaskStatus.FAILED, "info")]


def test_countdown_of_an_earlier_attempt_does_not_release_a_later_backoff(
    tmp_path, store, collaborators, make_scheduler
) -> None:
    collaborators.fetcher = FakeFetcher(
        failures=[RateLimitError("HTTP Error 429"), QuotaError("daily quota exceeded")],
    )
    scheduler = make_scheduler(
        retry_policy=RetryPolicy(
            rate_limit_base_seconds=1.0,
            rate_limit_max_seconds=1.0,
            quota_delay_seconds=60.0,
        ),
    )
    scheduler.start()

    task = scheduler.submit(_fetch(tmp_path))
    first = scheduler.wait_for_status(task.task_id, TaskStatus.RETRYING)
    assert first.failure_class == FailureClass.RATE_LIMITED
    scheduler.cancel(task.task_id)
    scheduler.retry(task.task_id)
    second = scheduler.wait_for_status(task.task_id, TaskStatus.RETRYING)
    assert second.failure_class == FailureClass.QUOTA

    time.sleep(1.5)

    assert store.require_task(task.task_id).status == TaskStatus.RETRYING
    assert scheduler.cancel(task.task_id).status == TaskStatus.CANCELLED
