from __future__ import annotations

import shlex
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import build_command, echo_template

from edit_worker.main import edit_worker

pytestmark = [
    allure.epic("Edit Worker"),
    allure.feature("CLI"),
]


@pytest.fixture()
def worker_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("EDIT_WORKER_ID", "cli-worker")
    monkeypatch.setenv("EDIT_WORKER_EXECUTOR_COMMAND", echo_template())
    monkeypatch.setenv("EDIT_WORKER_BUILD_COMMAND", shlex.join(build_command()))
    monkeypatch.setenv("EDIT_WORKER_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("EDIT_WORKER_PUBLISH_LOCAL_ROOT", str(tmp_path / "sites"))
    monkeypatch.setenv("EDIT_WORKER_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("EDIT_WORKER_STEP_GRACE_SECONDS", "1")
    return tmp_path / "cli.db"


def test_enqueue_run_and_inspect(tmp_path: Path, remote_repo: Path, worker_env: Path) -> None:
    db = str(worker_env)
    runner = CliRunner()

    enqueued = runner.invoke(
        edit_worker,
        [
            "enqueue",
            "work",
            "--db-path",
            db,
            "--project",
            "proj-a",
            "--user",
            "user-1",
            "--thread",
            "t-1",
            "--instruction",
            "Add a footer",
            "--repo-url",
            str(remote_repo),
            "--command-id",
            "c-1",
            "--session-id",
            "s-1",
        ],
    )
    assert enqueued.exit_code == 0, enqueued.output
    assert "Work enqueued: command_id=c-1" in enqueued.output
    assert "Claim requested: seq=" in enqueued.output

    ran = runner.invoke(edit_worker, ["run", "--db-path", db, "--once"])
    assert ran.exit_code == 0, ran.output
    assert "Worker cli-worker summary: claimed=1" in ran.output
    assert "processed=1 succeeded=1" in ran.output
    assert "- proj-a#user-1: drained" in ran.output

    listed = runner.invoke(
        edit_worker,
        ["results", "list", "--db-path", db, "--project", "proj-a", "--user", "user-1"],
    )
    assert listed.exit_code == 0, listed.output
    assert "Results:" in listed.output
    assert '"commandId": "c-1"' in listed.output
    assert '"success": true' in listed.output
    assert '"previewUrl": "https://edit.proj-a.webordinary.com"' in listed.output

    claims = runner.invoke(edit_worker, ["claims", "list", "--db-path", db])
    assert claims.exit_code == 0, claims.output
    assert "- proj-a#user-1 owner=cli-worker status=released" in claims.output

    thread = runner.invoke(
        edit_worker,
        [
            "threads",
            "show",
            "--db-path",
            db,
            "--project",
            "proj-a",
            "--user",
            "user-1",
            "--thread",
            "t-1",
        ],
    )
    assert thread.exit_code == 0, thread.output
    assert "Branch: thread-t-1" in thread.output
    assert "History (1):" in thread.output

    site = tmp_path / "sites" / "edit.proj-a.webordinary.com" / "index.html"
    assert site.read_text("utf-8") == "Add a footer\n"


def test_inspection_commands_on_empty_store(worker_env: Path) -> None:
    db = str(worker_env)
    runner = CliRunner()

    claims = runner.invoke(edit_worker, ["claims", "list", "--db-path", db])
    reaped = runner.invoke(
        edit_worker,
        ["claims", "reap", "--db-path", db, "--stale-after-seconds", "0"],
    )
    released = runner.invoke(
        edit_worker,
        ["claims", "release", "--db-path", db, "--project", "proj-b", "--user", "user-9"],
    )
    dead = runner.invoke(edit_worker, ["dead-letters", "list", "--db-path", db])
    results = runner.invoke(edit_worker, ["results", "list", "--db-path", db])

    assert claims.output.strip() == "No claims."
    assert reaped.output.strip() == "No stale claims."
    assert released.output.strip() == "No claim for proj-b#user-9."
    assert dead.output.strip() == "No dead letters."
    assert results.output.strip() == "No results."


def test_enqueue_claim_request(worker_env: Path) -> None:
    result = CliRunner().invoke(
        edit_worker,
        [
            "enqueue",
            "claim",
            "--db-path",
            str(worker_env),
            "--project",
            "proj-a",
            "--user",
            "user-1",
        ],
    )

    assert result.exit_code == 0, result.output
    assert result.output.startswith("Claim requested: unit=proj-a#user-1 seq=")


def test_results_filter_requires_project_and_user(worker_env: Path) -> None:
    result = CliRunner().invoke(
        edit_worker,
        ["results", "list", "--db-path", str(worker_env), "--project", "proj-a"],
    )

    assert result.exit_code == 2
    assert "--project and --user must be given together" in result.output


def test_run_rejects_invalid_configuration(
    worker_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("EDIT_WORKER_CONFLICT_STRATEGY", "sideways")

    result = CliRunner().invoke(edit_worker, ["run", "--db-path", str(worker_env), "--once"])

    assert result.exit_code == 1
    assert "EDIT_WORKER_CONFLICT_STRATEGY" in result.output
