from __future__ import annotations

from pathlib import Path

import allure
import pytest

from media_tasks.orchestrator.collaborators import CaptionSegment
from media_tasks.orchestrator.subtitles import (
    bilingual_segments,
    parse_srt,
    read_segments,
    segments_to_srt,
    write_segments,
)
from media_tasks.orchestrator.workdir import TaskWorkdirManager

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("Captions"),
]

SEGMENTS = [
    CaptionSegment(start_ms=0, end_ms=1_500, text="Hello there."),
    CaptionSegment(start_ms=3_661_001, end_ms=3_662_500, text="Two\nlines"),
]


def test_segments_render_as_srt() -> None:
    srt = segments_to_srt(SEGMENTS)

    assert srt.splitlines()[:4] == ["1", "00:00:00,000 --> 00:00:01,500", "Hello there.", ""]
    assert "01:01:01,001 --> 01:01:02,500" in srt


def test_parse_srt_reads_rendered_output_and_crlf() -> None:
    assert parse_srt(segments_to_srt(SEGMENTS)) == SEGMENTS
    crlf = "1\r\n00:00:01,000 --> 00:00:02,000\r\nHi\r\n\r\n"
    assert parse_srt(crlf) == [CaptionSegment(start_ms=1_000, end_ms=2_000, text="Hi")]


def test_parse_srt_skips_malformed_blocks() -> None:
    text = "garbage\nmore garbage\n\n2\n00:00:05,000 --> 00:00:06,000\nKept\n"

    assert parse_srt(text) == [CaptionSegment(start_ms=5_000, end_ms=6_000, text="Kept")]


def test_bilingual_segments_stack_translation_above_original() -> None:
    merged = bilingual_segments(SEGMENTS[:1], ["Hallo."])

    assert merged == [CaptionSegment(start_ms=0, end_ms=1_500, text="Hallo.\nHello there.")]
    with pytest.raises(ValueError, match="1 translations for 2 segments"):
        bilingual_segments(SEGMENTS, ["only one"])


def test_segments_persist_as_json(tmp_path: Path) -> None:
    path = tmp_path / "intermediate" / "captions.json"

    write_segments(path, SEGMENTS)

    assert read_segments(path) == SEGMENTS


def test_workdir_layout_and_cleanup(tmp_path: Path) -> None:
    manager = TaskWorkdirManager(tmp_path / "work")

    workdir = manager.for_task("task-1")

    assert workdir.partial_dir.is_dir()
    assert workdir.intermediate_dir.is_dir()
    assert workdir.download_partial == tmp_path / "work" / "task-1" / "partial" / "media.download"
    assert workdir.pass_output(2, ".mp4").name == "pass2.mp4"
    assert workdir.passlog_prefix.parent == workdir.intermediate_dir

    manager.cleanup("task-1")
    assert not (tmp_path / "work" / "task-1").exists()
    manager.cleanup("task-1")
