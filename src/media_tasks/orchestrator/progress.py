"""Folds per-stage progress samples into monotonic task-level progress."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from media_tasks.orchestrator.models import TaskKind, TaskProgress
from media_tasks.orchestrator.stages import stage_weights


@dataclass(slots=True)
class _TaskTrack:
    stages: tuple[str, ...]
    weights: tuple[float, ...]
    epoch: int
    stage_index: int
    stage_fraction: float
    overall: float
    rate_bps: float | None = None
    eta_seconds: float | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None

    def base(self, stage_index: int) -> float:
        return sum(self.weights[:stage_index])


class ProgressAggregator:
    """Weighted, non-regressing progress per task.

    A sample for an earlier stage, or a lower fraction within the current
    stage, is discarded. Moving to a later stage starts at the cumulative
    weight of the stages before it. Rate and ETA are smoothed with an
    exponential moving average.
    """

    def __init__(self, *, ema_alpha: float = 0.3) -> None:
        if not 0 < ema_alpha <= 1:
            raise ValueError("ema_alpha must be in (0, 1]")
        self.ema_alpha = ema_alpha
        self._lock = threading.Lock()
        self._tracks: dict[str, _TaskTrack] = {}

    def register(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        kind: TaskKind,
        stages: tuple[str, ...],
        stage_index: int,
        epoch: int,
        stage_fraction: float = 0.0,
    ) -> TaskProgress:
        """Start (or continue) tracking a task at ``stage_index`` within ``epoch``.

        Re-registering with the same epoch keeps the furthest position seen so far.
        """

        weights = stage_weights(kind, stages)
        with self._lock:
            track = self._tracks.get(task_id)
            if track is not None and track.epoch == epoch and stage_index <= track.stage_index:
                if stage_index == track.stage_index:
                    track.stage_fraction = max(track.stage_fraction, stage_fraction)
                return self._snapshot(task_id, track)
            fraction = min(1.0, max(0.0, stage_fraction))
            track = _TaskTrack(
                stages=stages,
                weights=weights,
                epoch=epoch,
                stage_index=stage_index,
                stage_fraction=fraction,
                overall=0.0,
            )
            track.overall = track.base(stage_index) + weights[stage_index] * fraction
            self._tracks[task_id] = track
            return self._snapshot(task_id, track)

    def on_stage_progress(  # noqa: PLR0913
        self,
        task_id: str,
        stage_name: str,
        fraction: float,
        rate_hint: float | None = None,
        eta_hint: float | None = None,
        *,
        downloaded_bytes: int | None = None,
        total_bytes: int | None = None,
    ) -> TaskProgress | None:
        """Fold one stage sample; returns the new snapshot or None when discarded."""

        with self._lock:
            track = self._tracks.get(task_id)
            if track is None or stage_name not in track.stages:
                return None
            stage_index = track.stages.index(stage_name)
            fraction = min(1.0, max(0.0, fraction))
            if stage_index < track.stage_index:
                return None
            if stage_index == track.stage_index and fraction < track.stage_fraction:
                return None
            if stage_index > track.stage_index:
                track.stage_index = stage_index
                track.rate_bps = None
                track.eta_seconds = None
                track.downloaded_bytes = None
                track.total_bytes = None
            track.stage_fraction = fraction
            overall = track.base(stage_index) + track.weights[stage_index] * fraction
            track.overall = max(track.overall, min(1.0, overall))
            track.rate_bps = self._smooth(track.rate_bps, rate_hint)
            track.eta_seconds = self._smooth(track.eta_seconds, eta_hint)
            if total_bytes is not None:
                track.total_bytes = total_bytes
            if downloaded_bytes is not None:
                if track.total_bytes is not None:
                    downloaded_bytes = min(downloaded_bytes, track.total_bytes)
                track.downloaded_bytes = downloaded_bytes
            return self._snapshot(task_id, track)

    def complete_stage(self, task_id: str, stage_name: str) -> TaskProgress | None:
        """Mark a stage fully done."""

        return self.on_stage_progress(task_id, stage_name, 1.0)

    def snapshot(self, task_id: str) -> TaskProgress | None:
        with self._lock:
            track = self._tracks.get(task_id)
            return self._snapshot(task_id, track) if track is not None else None

    def forget(self, task_id: str) -> None:
        with self._lock:
            self._tracks.pop(task_id, None)

    def _smooth(self, previous: float | None, sample: float | None) -> float | None:
        if sample is None:
            return previous
        if previous is None:
            return float(sample)
        return self.ema_alpha * float(sample) + (1 - self.ema_alpha) * previous

    def _snapshot(self, task_id: str, track: _TaskTrack) -> TaskProgress:
        return TaskProgress(
            task_id=task_id,
            stage_index=track.stage_index,
            stage_name=track.stages[track.stage_index],
            stage_fraction=track.stage_fraction,
            overall_fraction=round(track.overall, 6),
            rate_bps=track.rate_bps,
            eta_seconds=track.eta_seconds,
            downloaded_bytes=track.downloaded_bytes,
            total_bytes=track.total_bytes,
        )
