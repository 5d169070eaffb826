from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path

import allure
import pytest

from media_tasks.orchestrator.backend.ffmpeg import build_ffmpeg_args
from media_tasks.orchestrator.backend.translator import CommandTranslator, build_translate_args
from media_tasks.orchestrator.backend.whisper import WhisperCppTranscriber, read_whisper_json
from media_tasks.orchestrator.backend.ytdlp import YtDlpFetcher, build_fetch_args, format_selector
from media_tasks.orchestrator.collaborators import CaptionSegment, StopToken, TranscodeParams
from media_tasks.orchestrator.errors import (
    CorruptionError,
    RemoteServerError,
    UnsupportedFormatError,
    ValidationError,
)
from media_tasks.orchestrator.progress_parsers import YTDLP_PROGRESS_TEMPLATE

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("Tool Backends"),
]


def test_fetch_args_for_fresh_download(tmp_path: Path) -> None:
    dest = tmp_path / "media.download"

    args = build_fetch_args(
        binary="yt-dlp",
        source_ref="https://media.example/v",
        dest_path=dest,
        resume=False,
        hints={},
    )

    assert args[0] == "yt-dlp"
    assert "--no-continue" in args
    assert args[args.index("--progress-template") + 1] == YTDLP_PROGRESS_TEMPLATE
    assert args[args.index("-f") + 1] == "best[ext=mp4]/best"
    assert args[args.index("-o") + 1] == str(dest)
    assert "-N" not in args
    assert args[-1] == "https://media.example/v"


def test_fetch_args_apply_resume_and_hints(tmp_path: Path) -> None:
    args = build_fetch_args(
        binary="yt-dlp",
        source_ref="https://media.example/v",
        dest_path=tmp_path / "media.download",
        resume=True,
        hints={
            "quality": "720p",
            "parallel_chunks": 4,
            "rate_limit_kbps": 500,
            "proxy": "socks5://127.0.0.1:9050",
        },
    )

    assert "--continue" in args
    assert args[args.index("-f") + 1] == "best[height<=720][ext=mp4]/best[height<=720]"
    assert args[args.index("-N") + 1] == "4"
    assert args[args.index("--limit-rate") + 1] == "500K"
    assert args[args.index("--proxy") + 1] == "socks5://127.0.0.1:9050"


def test_format_selector_rejects_unknown_quality() -> None:
    assert format_selector("worst") == "worst"
    with pytest.raises(UnsupportedFormatError, match="Unknown quality"):
        format_selector("ultra")


def test_fetch_refuses_resume_when_partial_size_differs(tmp_path: Path) -> None:
    dest = tmp_path / "media.download"
    dest.write_bytes(b"x" * 10)
    fetcher = YtDlpFetcher(binary="yt-dlp")

    with pytest.raises(CorruptionError, match="expected 20"):
        list(
            fetcher.fetch(
                "https://media.example/v",
                dest,
                byte_offset=20,
                hints={},
                token=StopToken(),
            ),
        )


def test_ffmpeg_first_pass_discards_output(tmp_path: Path) -> None:
    args = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mp4",
        output_path=tmp_path / "out.mp4",
        params=TranscodeParams(crf=23, pass_number=1, passlog_prefix="/w/ffmpeg2pass"),
    )

    assert args[args.index("-pass") + 1] == "1"
    assert args[args.index("-passlogfile") + 1] == "/w/ffmpeg2pass"
    assert args[args.index("-crf") + 1] == "23"
    assert "-c:a" not in args
    assert args[-4:] == ["-an", "-f", "null", os.devnull]
    assert args[args.index("-progress") + 1] == "pipe:1"


def test_ffmpeg_second_pass_uses_bitrate_and_writes_output(tmp_path: Path) -> None:
    output = tmp_path / "out.mp4"
    args = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mp4",
        output_path=output,
        params=TranscodeParams(
            video_bitrate_kbps=800,
            crf=23,
            audio_bitrate_kbps=96,
            scale_height=720,
            pass_number=2,
            passlog_prefix="/w/ffmpeg2pass",
        ),
    )

    assert args[args.index("-b:v") + 1] == "800k"
    assert "-crf" not in args
    assert args[args.index("-vf") + 1] == "scale=-2:720"
    assert args[args.index("-b:a") + 1] == "96k"
    assert args[-1] == str(output)


def test_ffmpeg_two_pass_requires_pass_log(tmp_path: Path) -> None:
    with pytest.raises(UnsupportedFormatError, match="pass log"):
        build_ffmpeg_args(
            binary="ffmpeg",
            input_path=tmp_path / "in.mp4",
            output_path=tmp_path / "out.mp4",
            params=TranscodeParams(pass_number=2),
        )


def test_ffmpeg_subtitle_mux_picks_codec_by_container(tmp_path: Path) -> None:
    mp4 = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mp4",
        output_path=tmp_path / "out.mp4",
        params=TranscodeParams(subtitle_path="/w/subs.srt", subtitle_language="de"),
    )
    mkv = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mkv",
        output_path=tmp_path / "out.mkv",
        params=TranscodeParams(subtitle_path="/w/subs.srt"),
    )

    assert mp4[mp4.index("-c:s") + 1] == "mov_text"
    assert "language=de" in mp4
    assert mkv[mkv.index("-c:s") + 1] == "srt"


def test_ffmpeg_audio_extraction_and_remux(tmp_path: Path) -> None:
    wav = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mp4",
        output_path=tmp_path / "audio.wav",
        params=TranscodeParams(extract_audio_wav=True),
    )
    remux = build_ffmpeg_args(
        binary="ffmpeg",
        input_path=tmp_path / "in.mp4",
        output_path=tmp_path / "out.mp4",
        params=TranscodeParams(copy_streams=True),
    )

    assert wav[wav.index("-ar") + 1] == "16000"
    assert wav[wav.index("-c:a") + 1] == "pcm_s16le"
    assert remux[remux.index("-c") + 1] == "copy"


def test_read_whisper_json_skips_blank_segments(tmp_path: Path) -> None:
    path = tmp_path / "audio.json"
    path.write_text(
        json.dumps(
            {
                "transcription": [
                    {"offsets": {"from": 0, "to": 1500}, "text": " Hello there."},
                    {"offsets": {"from": 1500, "to": 1600}, "text": "  "},
                    {"offsets": {"from": 1600, "to": 3000}, "text": "Bye."},
                ],
            },
        ),
        "utf-8",
    )

    assert read_whisper_json(path) == [
        CaptionSegment(start_ms=0, end_ms=1500, text="Hello there."),
        CaptionSegment(start_ms=1600, end_ms=3000, text="Bye."),
    ]
    with pytest.raises(UnsupportedFormatError):
        read_whisper_json(tmp_path / "missing.json")


def test_whisper_requires_model_path(tmp_path: Path) -> None:
    transcriber = WhisperCppTranscriber(model_path=None)

    with pytest.raises(ValidationError, match="model path"):
        list(transcriber.transcribe(tmp_path / "audio.wav", None, token=StopToken()))


def test_translate_args_quote_languages() -> None:
    args = build_translate_args(
        command_template="translate --from {source} --to {target} --json",
        source_language="en",
        target_language="pt-BR",
    )

    assert args == ["translate", "--from", "en", "--to", "pt-BR", "--json"]


@pytest.mark.parametrize("template", ["", "   ", "translate {unknown}"])
def test_translate_args_reject_bad_templates(template: str) -> None:
    with pytest.raises(ValidationError):
        build_translate_args(command_template=template, source_language="en", target_language="de")


def _translator_command(script: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{target}}"


def test_command_translator_round_trips_batch() -> None:
    script = (
        "import json, sys\n"
        "texts = json.load(sys.stdin)\n"
        "print(json.dumps([sys.argv[1] + ':' + t for t in texts]))\n"
    )
    translator = CommandTranslator(command_template=_translator_command(script))

    translated = translator.translate_batch(
        ["one", "two"],
        source_language=None,
        target_language="de",
        token=StopToken(),
    )

    assert translated == ["de:one", "de:two"]
    assert translator.translate_batch(
        [],
        source_language=None,
        target_language="de",
        token=StopToken(),
    ) == []


def test_command_translator_rejects_mismatched_output() -> None:
    script = "import json, sys\njson.load(sys.stdin)\nprint(json.dumps(['only one']))\n"
    translator = CommandTranslator(command_template=_translator_command(script))

    with pytest.raises(RemoteServerError, match="1 texts for 2 inputs"):
        translator.translate_batch(
            ["one", "two"],
            source_language="en",
            target_language="de",
            token=StopToken(),
        )
