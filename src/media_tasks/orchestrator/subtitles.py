"""SRT rendering/parsing and caption segment persistence."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from pathlib import Path

from media_tasks.orchestrator.collaborators import CaptionSegment

_TS_RE = re.compile(r"^(?P<s>\d{2}:\d{2}:\d{2},\d{3})\s+-->\s+(?P<e>\d{2}:\d{2}:\d{2},\d{3})")


def _fmt_ms(ms: int) -> str:
    ms = max(ms, 0)
    hh, ms = divmod(ms, 3_600_000)
    mm, ms = divmod(ms, 60_000)
    ss, ms = divmod(ms, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d},{ms:03d}"


def _parse_ts(ts: str) -> int:
    hh, mm, rest = ts.split(":")
    ss, ms = rest.split(",")
    return ((int(hh) * 60 + int(mm)) * 60 + int(ss)) * 1000 + int(ms)


def segments_to_srt(segments: Sequence[CaptionSegment]) -> str:
    out: list[str] = []
    for idx, segment in enumerate(segments, start=1):
        out.append(str(idx))
        out.append(f"{_fmt_ms(segment.start_ms)} --> {_fmt_ms(segment.end_ms)}")
        out.append(segment.text)
        out.append("")
    return "\n".join(out)


def parse_srt(srt_text: str) -> list[CaptionSegment]:
    lines = srt_text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    segments: list[CaptionSegment] = []
    i = 0
    while i < len(lines):
        while i < len(lines) and lines[i].strip() == "":
            i += 1
        if i >= len(lines):
            break
        if i + 1 < len(lines) and lines[i].strip().isdigit() and _TS_RE.match(lines[i + 1].strip()):
            i += 1
        match = _TS_RE.match(lines[i].strip())
        if not match:
            while i < len(lines) and lines[i].strip() != "":
                i += 1
            continue
        start_ms = _parse_ts(match.group("s"))
        end_ms = _parse_ts(match.group("e"))
        i += 1
        text_lines: list[str] = []
        while i < len(lines) and lines[i].strip() != "":
            text_lines.append(lines[i])
            i += 1
        segments.append(
            CaptionSegment(start_ms=start_ms, end_ms=end_ms, text="\n".join(text_lines).strip()),
        )
    return segments


def bilingual_segments(
    original: Sequence[CaptionSegment],
    translated_texts: Sequence[str],
) -> list[CaptionSegment]:
    """Translated line above the original line, original timing."""

    if len(original) != len(translated_texts):
        raise ValueError(f"{len(translated_texts)} translations for {len(original)} segments")
    return [
        CaptionSegment(
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            text=f"{translated}\n{segment.text}",
        )
        for segment, translated in zip(original, translated_texts, strict=True)
    ]


def write_segments(path: Path, segments: Sequence[CaptionSegment]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [
        {"start_ms": segment.start_ms, "end_ms": segment.end_ms, "text": segment.text}
        for segment in segments
    ]
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")


def read_segments(path: Path) -> list[CaptionSegment]:
    payload = json.loads(path.read_text("utf-8"))
    return [
        CaptionSegment(
            start_ms=int(item["start_ms"]),
            end_ms=int(item["end_ms"]),
            text=str(item["text"]),
        )
        for item in payload
    ]
