from __future__ import annotations

import allure
import pytest

from media_tasks.orchestrator.progress_parsers import (
    FfmpegProgressParser,
    parse_clock,
    parse_size,
    parse_whisper_line,
    parse_ytdlp_line,
)

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("Progress Parsers"),
]


def test_ytdlp_template_line_is_parsed() -> None:
    sample = parse_ytdlp_line("MTPROGRESS 2500000 10000000 NA 1250000.5 6")

    assert sample is not None
    assert sample.fraction == 0.25
    assert sample.downloaded_bytes == 2_500_000
    assert sample.total_bytes == 10_000_000
    assert sample.rate_bps == 1_250_000.5
    assert sample.eta_seconds == 6.0
    assert sample.finished is False


def test_ytdlp_template_falls_back_to_estimate() -> None:
    sample = parse_ytdlp_line("MTPROGRESS 500 NA 1000 NA NA")

    assert sample is not None
    assert sample.total_bytes == 1000
    assert sample.fraction == 0.5
    assert sample.rate_bps is None


def test_ytdlp_template_without_sizes_has_no_fraction() -> None:
    sample = parse_ytdlp_line("MTPROGRESS 500 NA NA NA NA")

    assert sample is not None
    assert sample.fraction is None
    assert parse_ytdlp_line("MTPROGRESS NA NA NA NA NA") is None
    assert parse_ytdlp_line("MTPROGRESS 1 2") is None


def test_ytdlp_human_line_is_parsed() -> None:
    sample = parse_ytdlp_line("[download]  42.0% of ~ 10.00MiB at  1.50MiB/s ETA 00:04")

    assert sample is not None
    assert sample.fraction == pytest.approx(0.42)
    assert sample.total_bytes == 10 * 1024 * 1024
    assert sample.rate_bps == pytest.approx(1.5 * 1024 * 1024, rel=1e-6)
    assert sample.eta_seconds == 4.0


def test_ytdlp_ignores_unrelated_lines() -> None:
    assert parse_ytdlp_line("[youtube] abc: Downloading webpage") is None


def test_ffmpeg_progress_block_emits_one_sample() -> None:
    parser = FfmpegProgressParser(total_seconds=120.0)

    for line in ("frame=100", "out_time_us=30000000", "speed=2.0x"):
        assert parser(line) is None
    sample = parser("progress=continue")

    assert sample is not None
    assert sample.fraction == 0.25
    assert sample.time_processed_seconds == 30.0
    assert sample.eta_seconds == 45.0

    final = parser("progress=end")
    assert final is not None
    assert final.fraction == 1.0
    assert final.finished is True


def test_ffmpeg_progress_without_duration_has_no_fraction() -> None:
    parser = FfmpegProgressParser(total_seconds=None)
    parser("out_time=00:00:10.50")

    sample = parser("progress=continue")

    assert sample is not None
    assert sample.fraction is None
    assert sample.time_processed_seconds == 10.5


def test_whisper_progress_line() -> None:
    sample = parse_whisper_line("whisper_print_progress_callback: progress =  55%")

    assert sample is not None
    assert sample.fraction == 0.55
    assert parse_whisper_line("[00:00.000 --> 00:02.000]  Hello") is None


@pytest.mark.parametrize(
    ("text", "expected"),
    [("10.5MiB", 11_010_048), ("2KB", 2_000), ("512B", 512), ("1.5 GiB", 1_610_612_736)],
)
def test_parse_size(text: str, expected: int) -> None:
    assert parse_size(text) == expected


def test_parse_size_rejects_garbage() -> None:
    with pytest.raises(ValueError, match="Unrecognized size"):
        parse_size("lots")


def test_parse_clock() -> None:
    assert parse_clock("01:02:03.5") == 3723.5
    assert parse_clock("02:30") == 150.0
    assert parse_clock("42") == 42.0
    assert parse_clock("soon") is None
