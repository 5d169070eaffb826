"""Per-task working directory layout for partial and intermediate artifacts."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class TaskWorkdir:
    """Deterministic paths inside one task's working directory."""

    base_dir: Path

    @property
    def partial_dir(self) -> Path:
        return self.base_dir / "partial"

    @property
    def intermediate_dir(self) -> Path:
        return self.base_dir / "intermediate"

    @property
    def download_partial(self) -> Path:
        return self.partial_dir / "media.download"

    @property
    def passlog_prefix(self) -> Path:
        return self.intermediate_dir / "ffmpeg2pass"

    def pass_output(self, pass_number: int, suffix: str) -> Path:
        return self.partial_dir / f"pass{pass_number}{suffix}"

    @property
    def audio_wav(self) -> Path:
        return self.intermediate_dir / "audio.wav"

    @property
    def captions_json(self) -> Path:
        return self.intermediate_dir / "captions.json"

    @property
    def translated_json(self) -> Path:
        return self.intermediate_dir / "translated.json"

    def ensure(self) -> TaskWorkdir:
        self.partial_dir.mkdir(parents=True, exist_ok=True)
        self.intermediate_dir.mkdir(parents=True, exist_ok=True)
        return self


class TaskWorkdirManager:
    """Creates deterministic per-task directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def for_task(self, task_id: str) -> TaskWorkdir:
        return TaskWorkdir(base_dir=self.root_dir / task_id).ensure()

    def cleanup(self, task_id: str) -> None:
        """Remove a finished task's working directory."""

        shutil.rmtree(self.root_dir / task_id, ignore_errors=True)
