"""whisper.cpp backed transcriber."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

from media_tasks.orchestrator.collaborators import CaptionSegment, StopToken, TranscribeProgress
from media_tasks.orchestrator.errors import UnsupportedFormatError, ValidationError
from media_tasks.orchestrator.process_runner import ProcessRunner, ProcessSpec
from media_tasks.orchestrator.progress_parsers import parse_whisper_line


class WhisperCppTranscriber:
    """Runs whisper.cpp with JSON output and streamed progress."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        binary: str = "whisper-cli",
        model_path: Path | None = None,
        threads: int = 4,
        timeout_seconds: float | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.binary = binary
        self.model_path = model_path
        self.threads = threads
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    def transcribe(
        self,
        audio_path: Path,
        language_hint: str | None,
        *,
        token: StopToken,
    ) -> Iterator[TranscribeProgress]:
        if self.model_path is None:
            raise ValidationError("Whisper model path is not configured.")
        output_prefix = audio_path.with_suffix("")
        output_json = output_prefix.with_suffix(".json")
        output_json.unlink(missing_ok=True)
        runner = ProcessRunner(
            ProcessSpec(
                argv=[
                    self.binary,
                    "-m",
                    str(self.model_path),
                    "-f",
                    str(audio_path),
                    "-l",
                    language_hint or "auto",
                    "-t",
                    str(self.threads),
                    "--print-progress",
                    "-oj",
                    "-of",
                    str(output_prefix),
                ],
                label="whisper",
                timeout_seconds=self.timeout_seconds,
                stdout_parser=parse_whisper_line,
                stderr_parser=parse_whisper_line,
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        for sample in runner.stream():
            yield TranscribeProgress(segments_done=0, fraction=sample.fraction)

        segments = read_whisper_json(output_json)
        yield TranscribeProgress(
            segments_done=len(segments),
            segments_total=len(segments),
            segments=segments,
            fraction=1.0,
        )


def read_whisper_json(path: Path) -> list[CaptionSegment]:
    """Segments from whisper.cpp ``-oj`` output."""

    if not path.is_file():
        raise UnsupportedFormatError(f"whisper produced no transcript at {path}")
    payload = json.loads(path.read_text("utf-8"))
    segments: list[CaptionSegment] = []
    for item in payload.get("transcription") or []:
        offsets = item.get("offsets") or {}
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        segments.append(
            CaptionSegment(
                start_ms=int(offsets.get("from", 0)),
                end_ms=int(offsets.get("to", 0)),
                text=text,
            ),
        )
    return segments
