"""Ports for the external collaborators the stages call."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from media_tasks.orchestrator.errors import TaskCancelledError
from media_tasks.orchestrator.models import ControlRequest


class StopToken:
    """Pause/cancel intent shared by the scheduler and one running stage.

    Cancel overrides pause. Callbacks registered with ``on_cancel`` run once,
    on the thread that requested cancellation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._request: ControlRequest | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def request(self) -> ControlRequest | None:
        return self._request

    @property
    def cancel_requested(self) -> bool:
        return self._request == ControlRequest.CANCEL

    @property
    def pause_requested(self) -> bool:
        return self._request == ControlRequest.PAUSE

    def signal(self, request: ControlRequest) -> None:
        with self._lock:
            if self._request == ControlRequest.CANCEL:
                return
            self._request = request
            callbacks = list(self._callbacks) if request == ControlRequest.CANCEL else []
            if callbacks:
                self._callbacks.clear()
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._request != ControlRequest.CANCEL:
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self.cancel_requested:
            raise TaskCancelledError("Stage cancelled")


@dataclass(slots=True)
class MediaInfo:
    """Metadata returned by a probe."""

    title: str | None = None
    duration_seconds: float | None = None
    total_bytes: int | None = None
    extension: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "duration_seconds": self.duration_seconds,
            "total_bytes": self.total_bytes,
            "extension": self.extension,
            **self.extra,
        }


@dataclass(slots=True)
class FetchProgress:
    bytes_written: int
    total_bytes: int | None = None
    rate_bps: float | None = None
    eta_seconds: float | None = None


@dataclass(slots=True)
class TranscodeProgress:
    time_processed: float
    total_time: float | None = None
    eta_seconds: float | None = None


@dataclass(slots=True)
class CaptionSegment:
    start_ms: int
    end_ms: int
    text: str


@dataclass(slots=True)
class TranscribeProgress:
    segments_done: int
    segments_total: int | None = None
    segments: list[CaptionSegment] = field(default_factory=list)
    fraction: float | None = None


@dataclass(slots=True)
class TranscodeParams:
    """Encode/mux parameters handed to the transcoder."""

    video_codec: str | None = "libx264"
    audio_codec: str | None = "aac"
    crf: int | None = None
    preset: str | None = None
    scale_height: int | None = None
    video_bitrate_kbps: int | None = None
    audio_bitrate_kbps: int | None = None
    pass_number: int | None = None
    passlog_prefix: str | None = None
    copy_streams: bool = False
    extract_audio_wav: bool = False
    subtitle_path: str | None = None
    subtitle_language: str | None = None
    extra_args: tuple[str, ...] = ()


class MediaFetcher(Protocol):
    def probe(self, source_ref: str, *, token: StopToken) -> MediaInfo:
        """Resolve metadata for a remote source."""

    def fetch(  # noqa: PLR0913
        self,
        source_ref: str,
        dest_path: Path,
        *,
        byte_offset: int,
        hints: dict[str, Any],
        token: StopToken,
    ) -> Iterator[FetchProgress]:
        """Stream bytes to ``dest_path``, appending from ``byte_offset``."""


class Transcoder(Protocol):
    def probe(self, input_path: Path, *, token: StopToken) -> MediaInfo:
        """Inspect a local media file."""

    def run(
        self,
        input_path: Path,
        output_path: Path,
        params: TranscodeParams,
        *,
        token: StopToken,
    ) -> Iterator[TranscodeProgress]:
        """Produce ``output_path`` from ``input_path``."""


class Transcriber(Protocol):
    def transcribe(
        self,
        audio_path: Path,
        language_hint: str | None,
        *,
        token: StopToken,
    ) -> Iterator[TranscribeProgress]:
        """Time-aligned text segments; the last item carries every segment."""


class Translator(Protocol):
    def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        token: StopToken,
    ) -> list[str]:
        """Translate texts one-to-one."""


@dataclass(slots=True)
class Collaborators:
    """The set of collaborator implementations a scheduler runs stages with."""

    fetcher: MediaFetcher
    transcoder: Transcoder
    transcriber: Transcriber
    translator: Translator
