from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import FakeFetcher, FakeTranscoder, FakeTranscriber, FakeTranslator

from media_tasks import main as cli_main
from media_tasks.main import media_tasks
from media_tasks.orchestrator.collaborators import Collaborators
from media_tasks.orchestrator.controllers import MediaTasksCliController

pytestmark = [
    allure.epic("Media Tasks"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("MEDIA_TASKS_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("MEDIA_TASKS_WORKDIR_ROOT", str(tmp_path / "work"))
    monkeypatch.setenv("MEDIA_TASKS_TICK_SECONDS", "0.05")
    monkeypatch.setenv("MEDIA_TASKS_PROGRESS_PERSIST_SECONDS", "0")
    monkeypatch.setattr(
        cli_main,
        "CONTROLLER",
        MediaTasksCliController(
            collaborators_factory=lambda _settings: Collaborators(
                fetcher=FakeFetcher(),
                transcoder=FakeTranscoder(),
                transcriber=FakeTranscriber(),
                translator=FakeTranslator(),
            ),
        ),
    )
    return CliRunner()


def _task_id(output: str) -> str:
    match = re.search(r"task_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_submit_fetch_then_run_until_idle(tmp_path, cli) -> None:
    destination = tmp_path / "out" / "talk.mp4"
    submitted = cli.invoke(
        media_tasks,
        [
            "submit",
            "fetch",
            "https://media.example/talk",
            str(destination),
            "--subtitle-language",
            "en",
            "--translate-to",
            "de",
        ],
    )
    assert submitted.exit_code == 0, submitted.output
    assert "stages=info,transfer,merge,caption,translate" in submitted.output
    task_id = _task_id(submitted.output)

    ran = cli.invoke(media_tasks, ["run", "--until-idle"])
    assert ran.exit_code == 0, ran.output
    assert "Scheduler summary: completed=1 failed=0 cancelled=0" in ran.output
    assert destination.stat().st_size == 1_000
    assert (tmp_path / "out" / "talk.de.srt").is_file()

    inspected = cli.invoke(media_tasks, ["inspect", task_id])
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Progress: 100.0%" in inspected.output

    history = cli.invoke(media_tasks, ["history", "--status", "completed"])
    assert "History: 1" in history.output
    assert task_id in history.output


def test_submit_derive_and_list_by_kind(tmp_path, cli) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"\0" * 2_048)

    derived = cli.invoke(
        media_tasks,
        ["submit", "derive", str(source), str(tmp_path / "small.mp4"), "--single-pass"],
    )
    assert derived.exit_code == 0, derived.output
    assert "kind=derive stages=analyze,encode,finalize" in derived.output

    cli.invoke(media_tasks, ["submit", "fetch", "https://media.example/a", str(tmp_path / "a.mp4")])

    listed = cli.invoke(media_tasks, ["tasks", "--kind", "derive"])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert "status=queued stage=analyze" in listed.output

    stats = cli.invoke(media_tasks, ["stats"])
    assert "Tasks: 2" in stats.output
    assert "queued=2" in stats.output


def test_cancel_retry_and_remove_queued_task(tmp_path, cli) -> None:
    submitted = cli.invoke(
        media_tasks,
        ["submit", "fetch", "https://media.example/a", str(tmp_path / "a.mp4")],
    )
    task_id = _task_id(submitted.output)

    cancelled = cli.invoke(media_tasks, ["cancel", task_id])
    assert cancelled.output.strip() == f"Task cancelled: {task_id}"

    retried = cli.invoke(media_tasks, ["retry", task_id])
    assert retried.output.strip() == f"Task re-queued: {task_id}"

    removed = cli.invoke(media_tasks, ["remove", task_id])
    assert removed.output.strip() == f"Task removed: {task_id}"

    missing = cli.invoke(media_tasks, ["inspect", task_id])
    assert missing.output.strip() == f"Task not found: {task_id}"


def test_domain_errors_become_click_errors(tmp_path, cli) -> None:
    submitted = cli.invoke(
        media_tasks,
        ["submit", "fetch", "https://media.example/a", str(tmp_path / "a.mp4")],
    )
    task_id = _task_id(submitted.output)

    paused = cli.invoke(media_tasks, ["pause", task_id])
    assert paused.exit_code == 1
    assert "Error" in paused.output

    resumed = cli.invoke(media_tasks, ["resume", "no-such-task"])
    assert resumed.exit_code == 1

    embed_without_captions = cli.invoke(
        media_tasks,
        [
            "submit",
            "fetch",
            "https://media.example/b",
            str(tmp_path / "b.mp4"),
            "--embed-subtitles",
        ],
    )
    assert embed_without_captions.exit_code == 1
    assert "Embedding requires captions" in embed_without_captions.output


def test_invalid_choice_is_rejected_by_click(tmp_path, cli) -> None:
    result = cli.invoke(
        media_tasks,
        ["submit", "fetch", "https://media.example/a", str(tmp_path / "a.mp4"), "--quality", "8k"],
    )

    assert result.exit_code == 2


def test_version_option(cli) -> None:
    result = cli.invoke(media_tasks, ["--version"])

    assert result.exit_code == 0
    assert "media-tasks" in result.output


def test_history_range_delete_clear_and_clear_completed(tmp_path, cli) -> None:
    for name in ("a", "b"):
        cli.invoke(
            media_tasks,
            ["submit", "fetch", f"https://media.example/{name}", str(tmp_path / f"{name}.mp4")],
        )
    ran = cli.invoke(media_tasks, ["run", "--until-idle"])
    assert "completed=2" in ran.output
    submitted = cli.invoke(
        media_tasks,
        ["submit", "fetch", "https://media.example/c", str(tmp_path / "c.mp4")],
    )
    cancelled_id = _task_id(submitted.output)
    cli.invoke(media_tasks, ["cancel", cancelled_id])

    recent = cli.invoke(media_tasks, ["history", "--since", "2000-01-01"])
    assert "History: 3" in recent.output
    future = cli.invoke(media_tasks, ["history", "--since", "2999-01-01"])
    assert "History: 0" in future.output
    old = cli.invoke(media_tasks, ["history", "--until", "2000-01-01"])
    assert "History: 0" in old.output

    deleted = cli.invoke(media_tasks, ["history-delete", cancelled_id])
    assert deleted.output.strip() == f"History entries removed: 1 ({cancelled_id})"
    missing = cli.invoke(media_tasks, ["history-delete", cancelled_id])
    assert missing.exit_code == 1

    cleared_tasks = cli.invoke(media_tasks, ["clear-completed"])
    assert cleared_tasks.output.strip() == "Completed tasks removed: 2"
    listed = cli.invoke(media_tasks, ["tasks"])
    assert "Tasks: 1" in listed.output

    cleared = cli.invoke(media_tasks, ["history-clear", "--status", "completed"])
    assert cleared.output.strip() == "History entries removed: 2"
    assert "History: 0" in cli.invoke(media_tasks, ["history"]).output
