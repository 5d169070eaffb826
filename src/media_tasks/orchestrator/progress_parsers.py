"""Line parsers that turn tool output into normalized progress samples."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(slots=True)
class ProgressSample:
    """One normalized progress token parsed from a tool output line."""

    fraction: float | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None
    rate_bps: float | None = None
    eta_seconds: float | None = None
    time_processed_seconds: float | None = None
    total_seconds: float | None = None
    finished: bool = False


LineParser = Callable[[str], ProgressSample | None]

YTDLP_PROGRESS_PREFIX = "MTPROGRESS"
YTDLP_PROGRESS_TEMPLATE = (
    f"download:{YTDLP_PROGRESS_PREFIX} %(progress.downloaded_bytes)s "
    "%(progress.total_bytes)s %(progress.total_bytes_estimate)s "
    "%(progress.speed)s %(progress.eta)s"
)

_YTDLP_PERCENT_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
_YTDLP_TOTAL_RE = re.compile(r"of\s+~?\s*([\d.]+\s*[KMGT]?i?B)", re.IGNORECASE)
_YTDLP_RATE_RE = re.compile(r"at\s+([\d.]+\s*[KMGT]?i?B)/s", re.IGNORECASE)
_YTDLP_ETA_RE = re.compile(r"ETA\s+([\d:]+)")
_WHISPER_PROGRESS_RE = re.compile(r"progress\s*[=:]\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
_SIZE_RE = re.compile(r"([\d.]+)\s*([KMGT]?)(i?)B", re.IGNORECASE)
_UNIT_POWER = {"": 0, "K": 1, "M": 2, "G": 3, "T": 4}


def parse_ytdlp_line(line: str) -> ProgressSample | None:
    """Parse a yt-dlp progress template line or a human ``[download]`` line."""

    stripped = line.strip()
    if stripped.startswith(YTDLP_PROGRESS_PREFIX):
        return _parse_ytdlp_template(stripped[len(YTDLP_PROGRESS_PREFIX) :].split())

    match = _YTDLP_PERCENT_RE.search(stripped)
    if match is None:
        return None
    fraction = min(1.0, float(match.group(1)) / 100.0)
    total = _YTDLP_TOTAL_RE.search(stripped)
    rate = _YTDLP_RATE_RE.search(stripped)
    eta = _YTDLP_ETA_RE.search(stripped)
    total_bytes = parse_size(total.group(1)) if total else None
    return ProgressSample(
        fraction=fraction,
        total_bytes=total_bytes,
        downloaded_bytes=int(total_bytes * fraction) if total_bytes is not None else None,
        rate_bps=float(parse_size(rate.group(1))) if rate else None,
        eta_seconds=parse_clock(eta.group(1)) if eta else None,
        finished=fraction >= 1.0,
    )


def _parse_ytdlp_template(fields: list[str]) -> ProgressSample | None:
    if len(fields) < 5:  # noqa: PLR2004
        return None
    downloaded, total, estimate, speed, eta = (_na_float(value) for value in fields[:5])
    total_bytes = total if total is not None else estimate
    if downloaded is None:
        return None
    fraction = None
    if total_bytes:
        fraction = min(1.0, downloaded / total_bytes)
    return ProgressSample(
        fraction=fraction,
        downloaded_bytes=int(downloaded),
        total_bytes=int(total_bytes) if total_bytes is not None else None,
        rate_bps=speed,
        eta_seconds=eta,
        finished=fraction is not None and fraction >= 1.0,
    )


class FfmpegProgressParser:
    """Stateful parser for ``ffmpeg -progress pipe:1`` key=value blocks.

    A sample is emitted at each ``progress=`` line that closes a block.
    """

    def __init__(self, total_seconds: float | None) -> None:
        self.total_seconds = total_seconds
        self._out_seconds: float | None = None
        self._speed: float | None = None

    def __call__(self, line: str) -> ProgressSample | None:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        key = key.strip()
        value = value.strip()
        if key in {"out_time_us", "out_time_ms"}:
            # ffmpeg reports microseconds under both keys.
            if value.lstrip("-").isdigit():
                self._out_seconds = max(0.0, int(value) / 1_000_000)
            return None
        if key == "out_time" and self._out_seconds is None:
            self._out_seconds = parse_clock(value)
            return None
        if key == "speed":
            self._speed = _na_float(value.rstrip("x"))
            return None
        if key != "progress":
            return None
        finished = value == "end"
        fraction = None
        eta = None
        if finished:
            fraction = 1.0
        elif self.total_seconds and self._out_seconds is not None:
            fraction = min(1.0, self._out_seconds / self.total_seconds)
            if self._speed:
                eta = max(0.0, (self.total_seconds - self._out_seconds) / self._speed)
        return ProgressSample(
            fraction=fraction,
            time_processed_seconds=self._out_seconds,
            total_seconds=self.total_seconds,
            eta_seconds=eta,
            finished=finished,
        )


def parse_whisper_line(line: str) -> ProgressSample | None:
    """Parse whisper.cpp ``--print-progress`` output."""

    match = _WHISPER_PROGRESS_RE.search(line)
    if match is None:
        return None
    fraction = min(1.0, float(match.group(1)) / 100.0)
    return ProgressSample(fraction=fraction, finished=fraction >= 1.0)


def parse_size(text: str) -> int:
    """``10.5MiB`` -> bytes. Binary prefixes for ``iB``, decimal otherwise."""

    match = _SIZE_RE.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"Unrecognized size: {text!r}")
    number, unit, binary = match.groups()
    base = 1024 if binary else 1000
    return int(float(number) * base ** _UNIT_POWER[unit.upper()])


def parse_clock(text: str) -> float | None:
    """``HH:MM:SS(.ff)``, ``MM:SS`` or plain seconds -> seconds."""

    parts = text.strip().split(":")
    try:
        values = [float(part) for part in parts]
    except ValueError:
        return None
    seconds = 0.0
    for value in values:
        seconds = seconds * 60 + value
    return seconds


def _na_float(value: str) -> float | None:
    if value in {"NA", "N/A", "None", ""}:
        return None
    try:
        return float(value)
    except ValueError:
        return None
