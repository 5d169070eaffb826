from __future__ import annotations

from pathlib import Path

import allure
import pytest

from media_tasks.config import DEFAULT_STAGE_TIMEOUTS, SchedulerSettings, Settings

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults_when_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MEDIA_TASKS_DB_PATH", "MEDIA_TASKS_MAX_CONCURRENT", "MEDIA_TASKS_STAGE_TIMEOUTS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".media_tasks.db")
    assert settings.scheduler.max_concurrent == 3
    assert settings.retry.transient_exit_codes == (137, 143)
    assert settings.stage_timeouts == DEFAULT_STAGE_TIMEOUTS
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_TASKS_MAX_CONCURRENT", "5")
    monkeypatch.setenv("MEDIA_TASKS_RETRY_RATE_LIMIT_BASE_SECONDS", "10")
    monkeypatch.setenv("MEDIA_TASKS_RETRY_TRANSIENT_EXIT_CODES", "137, 143, 75")
    monkeypatch.setenv("MEDIA_TASKS_STAGE_TIMEOUTS", "transfer=900, caption=60")
    monkeypatch.setenv("MEDIA_TASKS_WHISPER_MODEL", str(tmp_path / "ggml-base.bin"))

    settings = Settings.from_env(db_path=tmp_path / "tasks.db")

    assert settings.db_path == tmp_path / "tasks.db"
    assert settings.scheduler.max_concurrent == 5
    assert settings.retry.rate_limit_base_seconds == 10.0
    assert settings.retry.transient_exit_codes == (137, 143, 75)
    assert settings.stage_timeouts["transfer"] == 900.0
    assert settings.stage_timeouts["caption"] == 60.0
    assert settings.stage_timeouts["info"] == DEFAULT_STAGE_TIMEOUTS["info"]
    assert settings.tools.whisper_model_path == tmp_path / "ggml-base.bin"


def test_from_env_rejects_malformed_stage_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_TASKS_STAGE_TIMEOUTS", "transfer")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_from_env_rejects_non_integer_exit_codes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_TASKS_RETRY_TRANSIENT_EXIT_CODES", "137,kill")

    with pytest.raises(ValueError, match="Invalid integer list"):
        Settings.from_env()


def test_validate_rejects_zero_concurrency() -> None:
    settings = Settings(scheduler=SchedulerSettings(max_concurrent=0))

    with pytest.raises(ValueError, match="MEDIA_TASKS_MAX_CONCURRENT"):
        settings.validate()


def test_validate_rejects_non_positive_stage_timeout() -> None:
    settings = Settings(stage_timeouts={"transfer": 0.0})

    with pytest.raises(ValueError, match="Stage timeout for 'transfer'"):
        settings.validate()
