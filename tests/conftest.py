"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest

from media_tasks.orchestrator.collaborators import (
    CaptionSegment,
    Collaborators,
    FetchProgress,
    MediaInfo,
    StopToken,
    TranscodeParams,
    TranscodeProgress,
    TranscribeProgress,
)
from media_tasks.orchestrator.errors import NetworkTransientError
from media_tasks.orchestrator.executor import StageExecutor
from media_tasks.orchestrator.repository import TaskStore
from media_tasks.orchestrator.retry_policy import RetryPolicy
from media_tasks.orchestrator.scheduler import Scheduler
from media_tasks.orchestrator.workdir import TaskWorkdirManager


class FakeFetcher:
    """Grows the partial file (sparse) through a fixed list of fractions."""

    def __init__(
        self,
        *,
        total_bytes: int = 1_000,
        points: Sequence[float] = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
        failures: Sequence[BaseException | None] = (),
        fail_after_chunks: int | None = None,
        chunk_delay: float = 0.0,
    ) -> None:
        self.total_bytes = total_bytes
        self.points = tuple(points)
        self.failures = list(failures)
        self.fail_after_chunks = fail_after_chunks
        self.chunk_delay = chunk_delay
        self.calls: list[dict] = []
        self.hold_after: int | None = None
        self.reached = threading.Event()
        self.release = threading.Event()
        self.gate: threading.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def probe(self, source_ref: str, *, token: StopToken) -> MediaInfo:
        return MediaInfo(
            title=f"clip {source_ref}",
            duration_seconds=10.0,
            total_bytes=self.total_bytes,
            extension="mp4",
        )

    def fetch(
        self,
        source_ref: str,
        dest_path: Path,
        *,
        byte_offset: int,
        hints: dict,
        token: StopToken,
    ) -> Iterator[FetchProgress]:
        self.calls.append({"source_ref": source_ref, "byte_offset": byte_offset, "hints": hints})
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(10)
            if self.failures:
                error = self.failures.pop(0)
                if error is not None:
                    raise error
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            if byte_offset == 0:
                dest_path.write_bytes(b"")
            failing = self.fail_after_chunks
            self.fail_after_chunks = None
            chunks = 0
            for point in self.points:
                target = int(self.total_bytes * point)
                if target <= byte_offset:
                    continue
                if failing is not None and chunks == failing:
                    raise NetworkTransientError("connection reset by peer")
                token.raise_if_cancelled()
                os.truncate(dest_path, target)
                chunks += 1
                if self.hold_after is not None and chunks == self.hold_after:
                    self.hold_after = None
                    self.reached.set()
                    self.release.wait(10)
                if self.chunk_delay:
                    time.sleep(self.chunk_delay)
                yield FetchProgress(
                    bytes_written=target,
                    total_bytes=self.total_bytes,
                    rate_bps=1_000_000.0,
                    eta_seconds=1.0,
                )
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeTranscoder:
    """Emits a few progress steps and writes a plausible output file."""

    def __init__(self, *, duration: float = 10.0, steps: int = 4, step_delay: float = 0.0):
        self.duration = duration
        self.steps = steps
        self.step_delay = step_delay
        self.failures: list[BaseException | None] = []
        self.calls: list[tuple[Path, Path, TranscodeParams]] = []

    def probe(self, input_path: Path, *, token: StopToken) -> MediaInfo:
        size = input_path.stat().st_size if input_path.exists() else None
        return MediaInfo(
            title=input_path.stem,
            duration_seconds=self.duration,
            total_bytes=size,
            extension=input_path.suffix.lstrip(".") or None,
        )

    def run(
        self,
        input_path: Path,
        output_path: Path,
        params: TranscodeParams,
        *,
        token: StopToken,
    ) -> Iterator[TranscodeProgress]:
        self.calls.append((input_path, output_path, params))
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        for step in range(1, self.steps + 1):
            token.raise_if_cancelled()
            if self.step_delay:
                time.sleep(self.step_delay)
            yield TranscodeProgress(
                time_processed=self.duration * step / self.steps,
                total_time=self.duration,
            )
        if params.pass_number == 1 and params.passlog_prefix:
            Path(f"{params.passlog_prefix}-0.log").write_text("stats", "utf-8")
        if str(output_path) == os.devnull:
            return
        output_path.parent.mkdir(parents=True, exist_ok=True)
        size = input_path.stat().st_size if input_path.exists() else 0
        if params.extract_audio_wav:
            output_path.write_bytes(b"RIFF0000WAVE")
            return
        output_path.write_bytes(b"")
        if params.copy_streams or params.subtitle_path:
            os.truncate(output_path, size)
        else:
            os.truncate(output_path, max(1, size // 2))


DEFAULT_SEGMENTS = (
    CaptionSegment(start_ms=0, end_ms=1_500, text="Hello there."),
    CaptionSegment(start_ms=1_500, end_ms=3_000, text="How are you?"),
    CaptionSegment(start_ms=3_000, end_ms=4_200, text="Fine, thanks."),
)


class FakeTranscriber:
    def __init__(self, segments: Sequence[CaptionSegment] = DEFAULT_SEGMENTS) -> None:
        self.segments = list(segments)
        self.languages: list[str | None] = []

    def transcribe(
        self,
        audio_path: Path,
        language_hint: str | None,
        *,
        token: StopToken,
    ) -> Iterator[TranscribeProgress]:
        self.languages.append(language_hint)
        total = len(self.segments)
        yield TranscribeProgress(segments_done=1, segments_total=total)
        yield TranscribeProgress(
            segments_done=total,
            segments_total=total,
            segments=list(self.segments),
            fraction=1.0,
        )


class FakeTranslator:
    def __init__(self) -> None:
        self.batches: list[list[str]] = []

    def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        token: StopToken,
    ) -> list[str]:
        self.batches.append(list(texts))
        return [f"[{target_language}] {text}" for text in texts]


class FastRetryPolicy(RetryPolicy):
    """Production classification with millisecond delays; records every decision."""

    def __init__(self) -> None:
        super().__init__(
            rate_limit_base_seconds=0.01,
            rate_limit_max_seconds=1.0,
            remote_server_step_seconds=0.01,
            quota_delay_seconds=0.01,
        )
        self.decisions = []

    def classify(self, error, **kwargs):
        decision = super().classify(error, **kwargs)
        self.decisions.append(decision)
        return decision


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db")
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def collaborators() -> Collaborators:
    return Collaborators(
        fetcher=FakeFetcher(),
        transcoder=FakeTranscoder(),
        transcriber=FakeTranscriber(),
        translator=FakeTranslator(),
    )


@pytest.fixture()
def make_scheduler(store: TaskStore, collaborators: Collaborators, tmp_path: Path):
    """Factory for fast-ticking schedulers; every one built is stopped on teardown."""

    created: list[Scheduler] = []

    def _make(**overrides) -> Scheduler:
        executor = StageExecutor(
            collaborators=overrides.pop("collaborators", collaborators),
            workdirs=TaskWorkdirManager(tmp_path / "work"),
            stage_timeouts=overrides.pop("stage_timeouts", None),
            slow_rate_bps=overrides.pop("slow_rate_bps", 0.0),
            slow_window_seconds=overrides.pop("slow_window_seconds", 60.0),
            translation_batch_size=overrides.pop("translation_batch_size", 50),
        )
        kwargs = {
            "store": store,
            "retry_policy": FastRetryPolicy(),
            "tick_seconds": 0.05,
            "progress_persist_seconds": 0.0,
            "graceful_shutdown_seconds": 2.0,
        }
        kwargs.update(overrides)
        scheduler = Scheduler(executor=executor, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.stop(timeout=2.0)
