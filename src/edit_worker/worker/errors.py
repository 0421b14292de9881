"""Error taxonomy for claim, workspace, and pipeline failures."""

from __future__ import annotations


class WorkerError(RuntimeError):
    """Base class for worker failures."""


class ClaimLost(WorkerError):
    """Claim renewal failed; the unit must stop consuming immediately."""

    def __init__(self, unit_key: str, *, reason: str = "renewal rejected") -> None:
        super().__init__(f"Claim lost for {unit_key}: {reason}")
        self.unit_key = unit_key
        self.reason = reason


class WorkspaceCorrupt(WorkerError):
    """Repository is in a state that needs recover() before use."""


class GitCommandError(WorkspaceCorrupt):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: tuple[str, ...], *, exit_code: int, output: str) -> None:
        command = " ".join(args)
        super().__init__(f"git {command} failed with exit code {exit_code}: {output.strip()}")
        self.args_list = args
        self.exit_code = exit_code
        self.output = output


class EditExecutionFailed(WorkerError):
    """Instruction executor reported failure."""


class BuildFailed(WorkerError):
    """Site build exited non-zero."""


class DeployFailed(WorkerError):
    """Publishing build output to the hosting target failed."""


class PushConflict(WorkerError):
    """Push stayed rejected after one auto-merge attempt."""


class PushRejectedProtectedBranch(WorkerError):
    """Push targeted a protected branch; configuration error, never retried."""

    def __init__(self, branch: str) -> None:
        super().__init__(f"Refusing to push protected branch {branch!r}")
        self.branch = branch


class ContractError(ValueError):
    """Inbound message payload does not match its contract."""
