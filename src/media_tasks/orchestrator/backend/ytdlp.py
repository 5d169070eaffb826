"""yt-dlp backed media fetcher."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from media_tasks.orchestrator.collaborators import FetchProgress, MediaInfo, StopToken
from media_tasks.orchestrator.errors import CorruptionError, UnsupportedFormatError
from media_tasks.orchestrator.process_runner import ProcessRunner, ProcessSpec
from media_tasks.orchestrator.progress_parsers import YTDLP_PROGRESS_TEMPLATE, parse_ytdlp_line

logger = logging.getLogger(__name__)


class YtDlpFetcher:
    """Runs yt-dlp for metadata and resumable single-file downloads."""

    def __init__(
        self,
        *,
        binary: str = "yt-dlp",
        probe_timeout_seconds: float | None = 120.0,
        fetch_timeout_seconds: float | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.binary = binary
        self.probe_timeout_seconds = probe_timeout_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.grace_seconds = grace_seconds

    def probe(self, source_ref: str, *, token: StopToken) -> MediaInfo:
        runner = ProcessRunner(
            ProcessSpec(
                argv=[self.binary, "--dump-json", "--no-playlist", "--no-warnings", source_ref],
                label="yt-dlp probe",
                timeout_seconds=self.probe_timeout_seconds,
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        result = runner.run()
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as error:
            raise UnsupportedFormatError(f"yt-dlp returned no metadata for {source_ref}") from error
        return MediaInfo(
            title=payload.get("title"),
            duration_seconds=_optional_float(payload.get("duration")),
            total_bytes=_optional_int(payload.get("filesize") or payload.get("filesize_approx")),
            extension=payload.get("ext"),
            extra={"id": payload.get("id"), "uploader": payload.get("uploader")},
        )

    def fetch(  # noqa: PLR0913
        self,
        source_ref: str,
        dest_path: Path,
        *,
        byte_offset: int,
        hints: dict[str, Any],
        token: StopToken,
    ) -> Iterator[FetchProgress]:
        existing = dest_path.stat().st_size if dest_path.exists() else 0
        if byte_offset and existing != byte_offset:
            raise CorruptionError(
                f"Partial {dest_path} has {existing} bytes, expected {byte_offset} to resume",
            )
        if not byte_offset and existing:
            dest_path.unlink()
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        runner = ProcessRunner(
            ProcessSpec(
                argv=build_fetch_args(
                    binary=self.binary,
                    source_ref=source_ref,
                    dest_path=dest_path,
                    resume=byte_offset > 0,
                    hints=hints,
                ),
                label="yt-dlp",
                timeout_seconds=self.fetch_timeout_seconds,
                stdout_parser=parse_ytdlp_line,
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        if byte_offset:
            logger.info("Resuming %s at byte %d", source_ref, byte_offset)
        for sample in runner.stream():
            if sample.downloaded_bytes is None:
                continue
            yield FetchProgress(
                bytes_written=sample.downloaded_bytes,
                total_bytes=sample.total_bytes,
                rate_bps=sample.rate_bps,
                eta_seconds=sample.eta_seconds,
            )


def build_fetch_args(
    *,
    binary: str,
    source_ref: str,
    dest_path: Path,
    resume: bool,
    hints: dict[str, Any],
) -> list[str]:
    """yt-dlp argv for a single-file download straight into ``dest_path``."""

    args = [
        binary,
        "--no-playlist",
        "--newline",
        "--no-part",
        "--no-warnings",
        "--progress-template",
        YTDLP_PROGRESS_TEMPLATE,
        "--continue" if resume else "--no-continue",
        "-f",
        format_selector(str(hints.get("quality") or "best")),
        "-o",
        str(dest_path),
    ]
    chunks = int(hints.get("parallel_chunks") or 1)
    if chunks > 1:
        args += ["-N", str(chunks)]
    if hints.get("rate_limit_kbps"):
        args += ["--limit-rate", f"{int(hints['rate_limit_kbps'])}K"]
    if hints.get("proxy"):
        args += ["--proxy", str(hints["proxy"])]
    if hints.get("cookies"):
        args += ["--cookies", str(hints["cookies"])]
    args.append(source_ref)
    return args


def format_selector(quality: str) -> str:
    """Single-file format selector for a quality label (``best``, ``worst``, ``720p``)."""

    if quality == "best":
        return "best[ext=mp4]/best"
    if quality == "worst":
        return "worst"
    height = quality.removesuffix("p")
    if not height.isdigit():
        raise UnsupportedFormatError(f"Unknown quality: {quality!r}")
    return f"best[height<={height}][ext=mp4]/best[height<={height}]"


def _optional_float(value: object) -> float | None:
    return float(value) if isinstance(value, int | float) else None


def _optional_int(value: object) -> int | None:
    return int(value) if isinstance(value, int | float) else None
