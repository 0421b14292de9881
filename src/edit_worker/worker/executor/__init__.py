"""Instruction executor implementations."""

from edit_worker.worker.executor.base import ExecutionResult, InstructionExecutor
from edit_worker.worker.executor.cli_executor import CliInstructionExecutor, ExecutorConfigError

__all__ = [
    "CliInstructionExecutor",
    "ExecutionResult",
    "ExecutorConfigError",
    "InstructionExecutor",
]
