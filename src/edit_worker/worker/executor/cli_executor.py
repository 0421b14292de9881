"""Subprocess-based instruction executor driven by a command template."""

from __future__ import annotations

import json
import logging
import shlex
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from edit_worker.worker.executor.base import ExecutionResult
from edit_worker.worker.models import ThreadHistoryEntry
from edit_worker.worker.steps import CancellationToken, InterruptibleStep, StepStatus

logger = logging.getLogger(__name__)


class ExecutorConfigError(ValueError):
    """Executor command template cannot be rendered."""


class CliInstructionExecutor:
    """Run an external CLI per instruction under an interruptible step.

    The template may reference ``{instruction}``, ``{workspace}`` and
    ``{history_file}``. When the process prints a JSON object with
    ``success``/``output``/``filesChanged``/``summary`` keys those fields are
    used; otherwise plain stdout becomes the output.
    """

    def __init__(
        self,
        *,
        command_template: str,
        step: InterruptibleStep,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.step = step
        self.timeout_seconds = timeout_seconds
        self.env = env

    def execute(
        self,
        instruction: str,
        workspace_path: Path,
        history: list[ThreadHistoryEntry],
        cancel: CancellationToken,
    ) -> ExecutionResult:
        with tempfile.TemporaryDirectory(prefix="edit-worker-history-") as tmp_dir:
            history_file = Path(tmp_dir) / "history.json"
            history_file.write_text(
                json.dumps([entry.to_payload() for entry in history], ensure_ascii=False),
                "utf-8",
            )
            argv = build_run_args(
                command_template=self.command_template,
                instruction=instruction,
                workspace=workspace_path,
                history_file=history_file,
            )
            result = self.step.run(
                argv,
                cancel,
                cwd=workspace_path,
                env=self.env,
                timeout_seconds=self.timeout_seconds,
            )

        if result.status == StepStatus.CANCELLED:
            return ExecutionResult(
                success=False,
                output=result.output,
                cancelled=True,
                error=result.error,
            )
        if result.status == StepStatus.FAILED:
            logger.warning("Executor failed: %s", result.error)
            return ExecutionResult(
                success=False,
                output=result.output,
                transient=True,
                error=result.error,
            )
        return _parse_output(result.output)


def build_run_args(
    *,
    command_template: str,
    instruction: str,
    workspace: Path,
    history_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorConfigError("Executor command template is empty.")
    if "{instruction}" not in stripped:
        raise ExecutorConfigError("Executor command template must include {instruction}.")
    try:
        rendered = stripped.format(
            instruction=shlex.quote(instruction),
            workspace=shlex.quote(str(workspace)),
            history_file=shlex.quote(str(history_file)),
        )
    except KeyError as error:
        raise ExecutorConfigError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorConfigError("Executor command template rendered empty command.")
    return argv


def _parse_output(stdout: str) -> ExecutionResult:
    payload = _last_json_object(stdout)
    if payload is None:
        return ExecutionResult(success=True, output=stdout)

    files = payload.get("filesChanged")
    files_changed = [str(item) for item in files] if isinstance(files, list) else None
    summary = payload.get("summary")
    output = payload.get("output")
    error = payload.get("error")
    return ExecutionResult(
        success=bool(payload.get("success", True)),
        output=output if isinstance(output, str) else stdout,
        files_changed=files_changed,
        summary=summary if isinstance(summary, str) else None,
        error=error if isinstance(error, str) else None,
    )


def _last_json_object(stdout: str) -> dict[str, Any] | None:
    stripped = stdout.strip()
    candidates = [stripped, *reversed(stripped.splitlines())]
    for raw in candidates:
        candidate = raw.strip()
        if not candidate.startswith("{"):
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None
