"""ffmpeg/ffprobe backed transcoder."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from pathlib import Path

from media_tasks.orchestrator.collaborators import (
    MediaInfo,
    StopToken,
    TranscodeParams,
    TranscodeProgress,
)
from media_tasks.orchestrator.errors import UnsupportedFormatError
from media_tasks.orchestrator.process_runner import ProcessRunner, ProcessSpec
from media_tasks.orchestrator.progress_parsers import FfmpegProgressParser


class FfmpegTranscoder:
    """Encodes, remuxes and muxes subtitles with ffmpeg."""

    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        timeout_seconds: float | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    def probe(self, input_path: Path, *, token: StopToken) -> MediaInfo:
        runner = ProcessRunner(
            ProcessSpec(
                argv=[
                    self.ffprobe_binary,
                    "-v",
                    "quiet",
                    "-print_format",
                    "json",
                    "-show_format",
                    "-show_streams",
                    str(input_path),
                ],
                label="ffprobe",
                timeout_seconds=60.0,
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        result = runner.run()
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as error:
            raise UnsupportedFormatError(f"ffprobe could not read {input_path}") from error
        media_format = payload.get("format") or {}
        streams = payload.get("streams") or []
        duration = media_format.get("duration")
        size = media_format.get("size")
        return MediaInfo(
            title=(media_format.get("tags") or {}).get("title"),
            duration_seconds=float(duration) if duration else None,
            total_bytes=int(size) if size else None,
            extension=input_path.suffix.lstrip(".") or None,
            extra={
                "format_name": media_format.get("format_name"),
                "video_streams": sum(1 for s in streams if s.get("codec_type") == "video"),
                "audio_streams": sum(1 for s in streams if s.get("codec_type") == "audio"),
            },
        )

    def run(
        self,
        input_path: Path,
        output_path: Path,
        params: TranscodeParams,
        *,
        token: StopToken,
    ) -> Iterator[TranscodeProgress]:
        duration = self.probe(input_path, token=token).duration_seconds
        if params.pass_number != 1:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        runner = ProcessRunner(
            ProcessSpec(
                argv=build_ffmpeg_args(
                    binary=self.ffmpeg_binary,
                    input_path=input_path,
                    output_path=output_path,
                    params=params,
                ),
                label="ffmpeg",
                timeout_seconds=self.timeout_seconds,
                stdout_parser=FfmpegProgressParser(duration),
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        for sample in runner.stream():
            processed = sample.time_processed_seconds or 0.0
            if sample.finished and duration:
                processed = duration
            yield TranscodeProgress(
                time_processed=processed,
                total_time=duration,
                eta_seconds=sample.eta_seconds,
            )


def build_ffmpeg_args(
    *,
    binary: str,
    input_path: Path,
    output_path: Path,
    params: TranscodeParams,
) -> list[str]:
    """ffmpeg argv for one encode pass, remux, audio extraction or subtitle mux."""

    args = [binary, "-hide_banner", "-nostdin", "-y", "-i", str(input_path)]
    if params.subtitle_path:
        mp4_like = output_path.suffix.lower() in {".mp4", ".m4v", ".mov"}
        subtitle_codec = "mov_text" if mp4_like else "srt"
        args += ["-i", params.subtitle_path, "-map", "0", "-map", "1"]
        args += ["-c:v", "copy", "-c:a", "copy", "-c:s", subtitle_codec]
        if params.subtitle_language:
            args += ["-metadata:s:s:0", f"language={params.subtitle_language}"]
        args += ["-disposition:s:0", "default"]
    elif params.copy_streams:
        args += ["-map", "0", "-c", "copy"]
    elif params.extract_audio_wav:
        args += ["-vn", "-ac", "1", "-ar", "16000", "-c:a", "pcm_s16le"]
    else:
        args += _encode_args(params)

    args += list(params.extra_args)
    args += ["-progress", "pipe:1", "-stats_period", "1", "-nostats"]
    if params.pass_number == 1:
        args += ["-an", "-f", "null", os.devnull]
    else:
        args.append(str(output_path))
    return args


def _encode_args(params: TranscodeParams) -> list[str]:
    args: list[str] = []
    if params.video_codec:
        args += ["-c:v", params.video_codec]
    if params.video_bitrate_kbps:
        args += ["-b:v", f"{params.video_bitrate_kbps}k"]
    elif params.crf is not None:
        args += ["-crf", str(params.crf)]
    if params.preset:
        args += ["-preset", params.preset]
    if params.scale_height:
        args += ["-vf", f"scale=-2:{params.scale_height}"]
    if params.pass_number is not None:
        if not params.passlog_prefix:
            raise UnsupportedFormatError("Two-pass encoding needs a pass log prefix")
        args += ["-pass", str(params.pass_number), "-passlogfile", params.passlog_prefix]
    if params.pass_number != 1:
        if params.audio_codec:
            args += ["-c:a", params.audio_codec]
        if params.audio_bitrate_kbps:
            args += ["-b:a", f"{params.audio_bitrate_kbps}k"]
    return args
