"""Runtime configuration for the media task scheduler and its tools."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from media_tasks.orchestrator.stages import (
    STAGE_CAPTION,
    STAGE_ENCODE,
    STAGE_INFO,
    STAGE_PASS1,
    STAGE_PASS2,
    STAGE_TRANSLATE,
)

DEFAULT_STAGE_TIMEOUTS: dict[str, float] = {
    STAGE_INFO: 120.0,
    STAGE_CAPTION: 4 * 3_600.0,
    STAGE_TRANSLATE: 1_800.0,
    STAGE_PASS1: 6 * 3_600.0,
    STAGE_PASS2: 6 * 3_600.0,
    STAGE_ENCODE: 6 * 3_600.0,
}


@dataclass(slots=True)
class SchedulerSettings:
    """Admission, lease and shutdown settings."""

    max_concurrent: int = 3
    tick_seconds: float = 1.0
    default_max_retries: int = 3
    graceful_shutdown_seconds: float = 30.0
    lease_stale_seconds: float = 30.0
    checkpoint_interval_seconds: float = 5.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RetrySettings:
    """Backoff table and slow-throughput detection."""

    rate_limit_base_seconds: float = 60.0
    rate_limit_max_seconds: float = 3_600.0
    remote_server_step_seconds: float = 30.0
    quota_delay_seconds: float = 3_600.0
    transient_exit_codes: tuple[int, ...] = (137, 143)
    slow_rate_bps: float = 0.0
    slow_window_seconds: float = 60.0


@dataclass(slots=True)
class ProgressSettings:
    """Progress smoothing and persistence throttle."""

    ema_alpha: float = 0.3
    persist_interval_seconds: float = 0.5


@dataclass(slots=True)
class ToolSettings:
    """External command-line tools used by the default collaborators."""

    ytdlp_binary: str = "yt-dlp"
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    whisper_binary: str = "whisper-cli"
    whisper_model_path: Path | None = None
    whisper_threads: int = 4
    translate_command: str | None = None
    translation_batch_size: int = 50
    process_grace_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".media_tasks.db")
    workdir_root: Path = Path(".media_tasks/work")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    stage_timeouts: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS))
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``MEDIA_TASKS_*`` environment variables."""

        whisper_model = os.getenv("MEDIA_TASKS_WHISPER_MODEL", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("MEDIA_TASKS_DB_PATH", ".media_tasks.db")),
            workdir_root=Path(os.getenv("MEDIA_TASKS_WORKDIR_ROOT", ".media_tasks/work")),
            scheduler=SchedulerSettings(
                max_concurrent=int(os.getenv("MEDIA_TASKS_MAX_CONCURRENT", "3")),
                tick_seconds=float(os.getenv("MEDIA_TASKS_TICK_SECONDS", "1.0")),
                default_max_retries=int(os.getenv("MEDIA_TASKS_MAX_RETRIES", "3")),
                graceful_shutdown_seconds=float(
                    os.getenv("MEDIA_TASKS_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                lease_stale_seconds=float(os.getenv("MEDIA_TASKS_LEASE_STALE_SECONDS", "30")),
                checkpoint_interval_seconds=float(
                    os.getenv("MEDIA_TASKS_CHECKPOINT_INTERVAL_SECONDS", "5"),
                ),
                sqlite_busy_timeout_ms=int(os.getenv("MEDIA_TASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            retry=RetrySettings(
                rate_limit_base_seconds=float(
                    os.getenv("MEDIA_TASKS_RETRY_RATE_LIMIT_BASE_SECONDS", "60"),
                ),
                rate_limit_max_seconds=float(
                    os.getenv("MEDIA_TASKS_RETRY_RATE_LIMIT_MAX_SECONDS", "3600"),
                ),
                remote_server_step_seconds=float(
                    os.getenv("MEDIA_TASKS_RETRY_REMOTE_SERVER_STEP_SECONDS", "30"),
                ),
                quota_delay_seconds=float(
                    os.getenv("MEDIA_TASKS_RETRY_QUOTA_DELAY_SECONDS", "3600"),
                ),
                transient_exit_codes=_env_int_tuple(
                    "MEDIA_TASKS_RETRY_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
                slow_rate_bps=float(os.getenv("MEDIA_TASKS_SLOW_RATE_BPS", "0")),
                slow_window_seconds=float(os.getenv("MEDIA_TASKS_SLOW_WINDOW_SECONDS", "60")),
            ),
            progress=ProgressSettings(
                ema_alpha=float(os.getenv("MEDIA_TASKS_PROGRESS_EMA_ALPHA", "0.3")),
                persist_interval_seconds=float(
                    os.getenv("MEDIA_TASKS_PROGRESS_PERSIST_SECONDS", "0.5"),
                ),
            ),
            stage_timeouts=_collect_stage_timeouts(),
            tools=ToolSettings(
                ytdlp_binary=os.getenv("MEDIA_TASKS_YTDLP_BINARY", "yt-dlp"),
                ffmpeg_binary=os.getenv("MEDIA_TASKS_FFMPEG_BINARY", "ffmpeg"),
                ffprobe_binary=os.getenv("MEDIA_TASKS_FFPROBE_BINARY", "ffprobe"),
                whisper_binary=os.getenv("MEDIA_TASKS_WHISPER_BINARY", "whisper-cli"),
                whisper_model_path=Path(whisper_model) if whisper_model else None,
                whisper_threads=int(os.getenv("MEDIA_TASKS_WHISPER_THREADS", "4")),
                translate_command=os.getenv("MEDIA_TASKS_TRANSLATE_COMMAND") or None,
                translation_batch_size=int(
                    os.getenv("MEDIA_TASKS_TRANSLATION_BATCH_SIZE", "50"),
                ),
                process_grace_seconds=float(
                    os.getenv("MEDIA_TASKS_PROCESS_GRACE_SECONDS", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if self.scheduler.max_concurrent < 1:
            raise ValueError("MEDIA_TASKS_MAX_CONCURRENT must be >= 1.")
        if self.scheduler.tick_seconds <= 0:
            raise ValueError("MEDIA_TASKS_TICK_SECONDS must be > 0.")
        if self.scheduler.default_max_retries < 0:
            raise ValueError("MEDIA_TASKS_MAX_RETRIES must be >= 0.")
        if self.scheduler.lease_stale_seconds <= 0:
            raise ValueError("MEDIA_TASKS_LEASE_STALE_SECONDS must be > 0.")
        if self.scheduler.graceful_shutdown_seconds < 0:
            raise ValueError("MEDIA_TASKS_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.retry.rate_limit_base_seconds < 0 or self.retry.rate_limit_max_seconds < 0:
            raise ValueError("Rate-limit backoff seconds must be >= 0.")
        if self.retry.slow_rate_bps < 0:
            raise ValueError("MEDIA_TASKS_SLOW_RATE_BPS must be >= 0.")
        if self.retry.slow_window_seconds <= 0:
            raise ValueError("MEDIA_TASKS_SLOW_WINDOW_SECONDS must be > 0.")
        if not 0 < self.progress.ema_alpha <= 1:
            raise ValueError("MEDIA_TASKS_PROGRESS_EMA_ALPHA must be in (0, 1].")
        if self.tools.translation_batch_size < 1:
            raise ValueError("MEDIA_TASKS_TRANSLATION_BATCH_SIZE must be >= 1.")
        for stage, seconds in self.stage_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"Stage timeout for {stage!r} must be > 0, got {seconds}.")


def _collect_stage_timeouts() -> dict[str, float]:
    """Defaults overridden by ``MEDIA_TASKS_STAGE_TIMEOUTS=stage=seconds,...``."""

    timeouts = dict(DEFAULT_STAGE_TIMEOUTS)
    raw = os.getenv("MEDIA_TASKS_STAGE_TIMEOUTS", "").strip()
    if not raw:
        return timeouts
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid MEDIA_TASKS_STAGE_TIMEOUTS entry: "
                f"{token!r}. Expected format '<stage>=<seconds>'.",
            )
        stage, seconds_raw = token.split("=", 1)
        try:
            timeouts[stage.strip()] = float(seconds_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid MEDIA_TASKS_STAGE_TIMEOUTS value for {stage.strip()!r}: "
                f"{seconds_raw!r}",
            ) from error
    return timeouts


def _env_int_tuple(name: str, *, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {raw!r}") from error
