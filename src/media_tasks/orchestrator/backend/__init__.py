"""Command-line collaborator implementations."""

from media_tasks.orchestrator.backend.ffmpeg import FfmpegTranscoder
from media_tasks.orchestrator.backend.translator import CommandTranslator
from media_tasks.orchestrator.backend.whisper import WhisperCppTranscriber
from media_tasks.orchestrator.backend.ytdlp import YtDlpFetcher

__all__ = [
    "CommandTranslator",
    "FfmpegTranscoder",
    "WhisperCppTranscriber",
    "YtDlpFetcher",
]
