"""Runtime configuration for the edit worker."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

DEFAULT_PROTECTED_BRANCHES = ("main", "master", "production")
SUPPORTED_CONFLICT_STRATEGIES = ("ours", "theirs")
SUPPORTED_PUBLISH_MODES = ("local", "command")


def _default_worker_id() -> str:
    return f"worker-{uuid4().hex[:8]}"


@dataclass(slots=True)
class ClaimSettings:
    """Claim ownership and renewal settings."""

    worker_id: str = field(default_factory=_default_worker_id)
    renew_interval_seconds: float = 30.0
    reclaim_timeout_seconds: float = 3_600.0
    idle_release_seconds: float = 1_800.0
    max_units: int = 1


@dataclass(slots=True)
class QueueSettings:
    """Queue polling, visibility, and retry settings."""

    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: float = 300.0
    max_attempts: int = 3
    retry_delay_seconds: float = 5.0


@dataclass(slots=True)
class GitSettings:
    """Workspace repository settings."""

    workspace_root: Path = Path(".edit_worker/workspaces")
    default_branch: str = "main"
    protected_branches: tuple[str, ...] = DEFAULT_PROTECTED_BRANCHES
    remote_name: str = "origin"
    conflict_strategy: str = "ours"
    push_enabled: bool = True
    author_name: str = "Edit Worker"
    author_email: str = "edit-worker@localhost"


@dataclass(slots=True)
class StepSettings:
    """External step timeouts and cancellation grace period."""

    grace_seconds: float = 5.0
    edit_timeout_seconds: float = 1_800.0
    build_timeout_seconds: float = 900.0
    deploy_timeout_seconds: float = 600.0


@dataclass(slots=True)
class BuildSettings:
    """Static site build command and output location."""

    command: tuple[str, ...] = ("npm", "run", "build")
    output_dir: str = "dist"


@dataclass(slots=True)
class PublishSettings:
    """Where build output is mirrored."""

    mode: str = "local"
    domain: str = "webordinary.com"
    local_root: Path = Path(".edit_worker/sites")
    command_template: str = "aws s3 sync {source} s3://{bucket} --delete"


@dataclass(slots=True)
class ExecutorSettings:
    """Instruction executor command template."""

    command_template: str = (
        "python -m edit_worker.worker.executor.echo_executor "
        "--instruction {instruction} --workspace {workspace} --history-file {history_file}"
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".edit_worker.db")
    sqlite_busy_timeout_ms: int = 5_000
    claims: ClaimSettings = field(default_factory=ClaimSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    git: GitSettings = field(default_factory=GitSettings)
    steps: StepSettings = field(default_factory=StepSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    publish: PublishSettings = field(default_factory=PublishSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = cls()
        return cls(
            db_path=db_path or Path(os.getenv("EDIT_WORKER_DB_PATH", ".edit_worker.db")),
            sqlite_busy_timeout_ms=int(os.getenv("EDIT_WORKER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            claims=ClaimSettings(
                worker_id=os.getenv("EDIT_WORKER_ID", "").strip() or _default_worker_id(),
                renew_interval_seconds=float(
                    os.getenv("EDIT_WORKER_CLAIM_RENEW_INTERVAL_SECONDS", "30"),
                ),
                reclaim_timeout_seconds=float(
                    os.getenv("EDIT_WORKER_CLAIM_RECLAIM_TIMEOUT_SECONDS", "3600"),
                ),
                idle_release_seconds=float(
                    os.getenv("EDIT_WORKER_IDLE_RELEASE_SECONDS", "1800"),
                ),
                max_units=int(os.getenv("EDIT_WORKER_MAX_UNITS", "1")),
            ),
            queue=QueueSettings(
                poll_interval_seconds=float(os.getenv("EDIT_WORKER_POLL_INTERVAL_SECONDS", "1.0")),
                visibility_timeout_seconds=float(
                    os.getenv("EDIT_WORKER_VISIBILITY_TIMEOUT_SECONDS", "300"),
                ),
                max_attempts=int(os.getenv("EDIT_WORKER_MAX_ATTEMPTS", "3")),
                retry_delay_seconds=float(os.getenv("EDIT_WORKER_RETRY_DELAY_SECONDS", "5")),
            ),
            git=GitSettings(
                workspace_root=Path(
                    os.getenv("EDIT_WORKER_WORKSPACE_ROOT", str(defaults.git.workspace_root)),
                ),
                default_branch=os.getenv("EDIT_WORKER_DEFAULT_BRANCH", "main").strip(),
                protected_branches=_collect_csv(
                    "EDIT_WORKER_PROTECTED_BRANCHES",
                    default=DEFAULT_PROTECTED_BRANCHES,
                ),
                remote_name=os.getenv("EDIT_WORKER_GIT_REMOTE", "origin").strip(),
                conflict_strategy=os.getenv("EDIT_WORKER_CONFLICT_STRATEGY", "ours")
                .strip()
                .lower(),
                push_enabled=_env_bool("EDIT_WORKER_PUSH_ENABLED", default=True),
                author_name=os.getenv("EDIT_WORKER_GIT_AUTHOR_NAME", "Edit Worker"),
                author_email=os.getenv("EDIT_WORKER_GIT_AUTHOR_EMAIL", "edit-worker@localhost"),
            ),
            steps=StepSettings(
                grace_seconds=float(os.getenv("EDIT_WORKER_STEP_GRACE_SECONDS", "5")),
                edit_timeout_seconds=float(
                    os.getenv("EDIT_WORKER_EDIT_TIMEOUT_SECONDS", "1800"),
                ),
                build_timeout_seconds=float(
                    os.getenv("EDIT_WORKER_BUILD_TIMEOUT_SECONDS", "900"),
                ),
                deploy_timeout_seconds=float(
                    os.getenv("EDIT_WORKER_DEPLOY_TIMEOUT_SECONDS", "600"),
                ),
            ),
            build=BuildSettings(
                command=tuple(shlex.split(os.getenv("EDIT_WORKER_BUILD_COMMAND", "npm run build"))),
                output_dir=os.getenv("EDIT_WORKER_BUILD_OUTPUT_DIR", "dist").strip(),
            ),
            publish=PublishSettings(
                mode=os.getenv("EDIT_WORKER_PUBLISH_MODE", "local").strip().lower(),
                domain=os.getenv("EDIT_WORKER_PUBLISH_DOMAIN", "webordinary.com").strip(),
                local_root=Path(
                    os.getenv("EDIT_WORKER_PUBLISH_LOCAL_ROOT", str(defaults.publish.local_root)),
                ),
                command_template=os.getenv(
                    "EDIT_WORKER_PUBLISH_COMMAND",
                    defaults.publish.command_template,
                ),
            ),
            executor=ExecutorSettings(
                command_template=os.getenv(
                    "EDIT_WORKER_EXECUTOR_COMMAND",
                    defaults.executor.command_template,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent settings."""

        claims = self.claims
        if claims.renew_interval_seconds <= 0:
            raise ValueError("EDIT_WORKER_CLAIM_RENEW_INTERVAL_SECONDS must be > 0.")
        if claims.renew_interval_seconds >= claims.reclaim_timeout_seconds:
            raise ValueError(
                "EDIT_WORKER_CLAIM_RENEW_INTERVAL_SECONDS must be shorter than "
                "EDIT_WORKER_CLAIM_RECLAIM_TIMEOUT_SECONDS.",
            )
        if claims.idle_release_seconds >= claims.reclaim_timeout_seconds:
            raise ValueError(
                "EDIT_WORKER_IDLE_RELEASE_SECONDS must be shorter than "
                "EDIT_WORKER_CLAIM_RECLAIM_TIMEOUT_SECONDS.",
            )
        if claims.max_units < 1:
            raise ValueError("EDIT_WORKER_MAX_UNITS must be >= 1.")
        if self.queue.max_attempts < 1:
            raise ValueError("EDIT_WORKER_MAX_ATTEMPTS must be >= 1.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("EDIT_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.queue.visibility_timeout_seconds <= self.queue.poll_interval_seconds:
            raise ValueError(
                "EDIT_WORKER_VISIBILITY_TIMEOUT_SECONDS must be longer than the poll interval.",
            )
        if not 0 < self.steps.grace_seconds <= 60:
            raise ValueError("EDIT_WORKER_STEP_GRACE_SECONDS must be in (0, 60].")
        if self.git.conflict_strategy not in SUPPORTED_CONFLICT_STRATEGIES:
            raise ValueError(
                "EDIT_WORKER_CONFLICT_STRATEGY must be one of "
                f"{', '.join(SUPPORTED_CONFLICT_STRATEGIES)}; got {self.git.conflict_strategy!r}.",
            )
        if self.publish.mode not in SUPPORTED_PUBLISH_MODES:
            raise ValueError(
                "EDIT_WORKER_PUBLISH_MODE must be one of "
                f"{', '.join(SUPPORTED_PUBLISH_MODES)}; got {self.publish.mode!r}.",
            )
        if not self.build.command:
            raise ValueError("EDIT_WORKER_BUILD_COMMAND must not be empty.")
        if "{instruction}" not in self.executor.command_template:
            raise ValueError("EDIT_WORKER_EXECUTOR_COMMAND must include {instruction}.")
        if not self.git.default_branch:
            raise ValueError("EDIT_WORKER_DEFAULT_BRANCH must not be empty.")


def _collect_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
