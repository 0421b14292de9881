"""Executor interface consumed by the message processor."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from edit_worker.worker.models import ThreadHistoryEntry
from edit_worker.worker.steps import CancellationToken


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of applying one instruction to a workspace.

    ``files_changed`` is None when the executor does not report changed
    paths; the caller then inspects the workspace itself. ``transient`` marks
    failures worth retrying, such as a crashed or timed-out executor process.
    """

    success: bool
    output: str
    files_changed: list[str] | None = None
    summary: str | None = None
    cancelled: bool = False
    transient: bool = False
    error: str | None = None


class InstructionExecutor(Protocol):
    """Protocol implemented by instruction executors."""

    def execute(
        self,
        instruction: str,
        workspace_path: Path,
        history: list[ThreadHistoryEntry],
        cancel: CancellationToken,
    ) -> ExecutionResult:
        """Apply ``instruction`` to ``workspace_path``; must honour ``cancel``."""
