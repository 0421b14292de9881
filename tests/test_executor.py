from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest
from conftest import echo_template

from edit_worker.worker.executor import CliInstructionExecutor, ExecutorConfigError
from edit_worker.worker.executor.cli_executor import _parse_output, build_run_args
from edit_worker.worker.models import ThreadHistoryEntry
from edit_worker.worker.steps import CancellationToken, InterruptibleStep

pytestmark = [
    allure.epic("Edit Worker"),
    allure.feature("Instruction Executor"),
]


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    argv = build_run_args(
        command_template="agent --prompt {instruction} --cwd {workspace} --ctx {history_file}",
        instruction="Change the title to \"Bob's Bakery\"; rm -rf /",
        workspace=tmp_path / "with space",
        history_file=tmp_path / "history.json",
    )

    assert argv == [
        "agent",
        "--prompt",
        "Change the title to \"Bob's Bakery\"; rm -rf /",
        "--cwd",
        str(tmp_path / "with space"),
        "--ctx",
        str(tmp_path / "history.json"),
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --cwd {workspace}", "must include {instruction}"),
        ("agent {instruction} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(
    tmp_path: Path,
    template: str,
    message: str,
) -> None:
    with pytest.raises(ExecutorConfigError, match=message):
        build_run_args(
            command_template=template,
            instruction="x",
            workspace=tmp_path,
            history_file=tmp_path / "h.json",
        )


def test_parse_output_uses_last_json_object() -> None:
    stdout = "\n".join(
        [
            "thinking...",
            json.dumps({"progress": 1}),
            json.dumps(
                {
                    "success": True,
                    "output": "done",
                    "filesChanged": ["a.html", "b.css"],
                    "summary": "Edited two files",
                },
            ),
        ],
    )

    result = _parse_output(stdout)

    assert result.success is True
    assert result.output == "done"
    assert result.files_changed == ["a.html", "b.css"]
    assert result.summary == "Edited two files"


def test_parse_output_falls_back_to_plain_text() -> None:
    result = _parse_output("just text\n")

    assert result.success is True
    assert result.output == "just text\n"
    assert result.files_changed is None


def test_echo_executor_appends_instruction(tmp_path: Path) -> None:
    executor = CliInstructionExecutor(
        command_template=echo_template(),
        step=InterruptibleStep(grace_seconds=1),
    )
    history = [ThreadHistoryEntry(command_id="c-0", instruction="before", summary="ok")]

    result = executor.execute("Add a footer", tmp_path, history, CancellationToken())

    assert result.success is True
    assert result.files_changed == ["file.txt"]
    assert result.summary == "Applied instruction after 1 prior turn(s)"
    assert (tmp_path / "file.txt").read_text("utf-8") == "Add a footer\n"


def test_reported_failure_is_not_transient(tmp_path: Path) -> None:
    executor = CliInstructionExecutor(
        command_template=echo_template("--fail"),
        step=InterruptibleStep(grace_seconds=1),
    )

    result = executor.execute("x", tmp_path, [], CancellationToken())

    assert result.success is False
    assert result.transient is False
    assert result.error == "echo executor told to fail"


def test_crashing_executor_is_transient(tmp_path: Path) -> None:
    template = " ".join(
        shlex.quote(part) for part in (sys.executable, "-c", "import sys; sys.exit(2)")
    )
    executor = CliInstructionExecutor(
        command_template=f"{template} {{instruction}}",
        step=InterruptibleStep(grace_seconds=1),
    )

    result = executor.execute("x", tmp_path, [], CancellationToken())

    assert result.success is False
    assert result.transient is True
    assert result.error == "Exited with code 2"


def test_cancelled_executor_reports_cancelled(tmp_path: Path) -> None:
    cancel = CancellationToken()
    cancel.cancel("newer message")
    executor = CliInstructionExecutor(
        command_template=echo_template(),
        step=InterruptibleStep(grace_seconds=1),
    )

    result = executor.execute("x", tmp_path, [], cancel)

    assert result.cancelled is True
    assert result.success is False
    assert not (tmp_path / "file.txt").exists()
