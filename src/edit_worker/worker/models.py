"""Domain models for claims, threads, queues, and pipeline runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from edit_worker.worker.steps import CancellationToken

UNCLAIMED_QUEUE = "unclaimed"
UNIT_QUEUE_PREFIX = "unit:"


class ClaimStatus(str, Enum):
    """Lifecycle states of a claim record."""

    ACTIVE = "active"
    IDLE = "idle"
    RELEASED = "released"


class ClaimOutcome(str, Enum):
    """Result of one atomic claim attempt."""

    CLAIMED = "claimed"
    ALREADY_OWNED = "already_owned"
    ERROR = "error"


class QueueMessageStatus(str, Enum):
    """Durable queue message states."""

    PENDING = "pending"
    LEASED = "leased"
    ACKED = "acked"
    DEAD_LETTER = "dead_letter"


class PipelineStage(str, Enum):
    """Stage of one message's pipeline run."""

    EDITING = "editing"
    COMMITTING = "committing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    PUSHING = "pushing"
    DONE = "done"
    INTERRUPTED = "interrupted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {PipelineStage.DONE, PipelineStage.INTERRUPTED, PipelineStage.FAILED}


class ProcessorState(str, Enum):
    """Orchestrator state for the claimed unit."""

    IDLE = "idle"
    INTERRUPTING = "interrupting"
    SWITCHING_CONTEXT = "switching_context"
    EDITING = "editing"
    COMMITTING = "committing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    PUSHING = "pushing"


class OperationKind(str, Enum):
    """Kinds of cancellable long-running operations."""

    EDIT = "edit"
    BUILD = "build"
    DEPLOY = "deploy"


@dataclass(frozen=True, slots=True)
class WorkUnit:
    """Project+user pair owned exclusively by one worker."""

    project_id: str
    user_id: str

    @property
    def key(self) -> str:
        return f"{self.project_id}#{self.user_id}"

    @property
    def queue_name(self) -> str:
        return f"{UNIT_QUEUE_PREFIX}{self.key}"

    @classmethod
    def from_key(cls, key: str) -> WorkUnit:
        project_id, separator, user_id = key.partition("#")
        if not separator or not project_id or not user_id:
            raise ValueError(f"Invalid unit key: {key!r}")
        return cls(project_id=project_id, user_id=user_id)

    def __str__(self) -> str:
        return self.key


@dataclass(slots=True)
class ClaimRecord:
    """Readable claim row."""

    unit: WorkUnit
    worker_id: str
    status: ClaimStatus
    claimed_at: datetime
    last_activity_at: datetime


@dataclass(slots=True)
class ClaimResult:
    """Outcome of ``ClaimCoordinator.try_claim``."""

    outcome: ClaimOutcome
    unit: WorkUnit
    owner: str | None = None
    error: str | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


@dataclass(slots=True)
class ThreadHistoryEntry:
    """One prior instruction/result pair inside a thread."""

    command_id: str
    instruction: str
    summary: str
    interrupted: bool = False
    commit_ref: str | None = None
    timestamp: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "commandId": self.command_id,
            "instruction": self.instruction,
            "summary": self.summary,
            "interrupted": self.interrupted,
            "commitRef": self.commit_ref,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ThreadHistoryEntry:
        return cls(
            command_id=str(payload.get("commandId", "")),
            instruction=str(payload.get("instruction", "")),
            summary=str(payload.get("summary", "")),
            interrupted=bool(payload.get("interrupted", False)),
            commit_ref=payload.get("commitRef"),
            timestamp=payload.get("timestamp"),
        )


@dataclass(slots=True)
class ThreadContext:
    """Conversation thread state owned by the orchestrator of one unit."""

    thread_id: str
    branch: str
    history: list[ThreadHistoryEntry] = field(default_factory=list)
    last_commit: str | None = None


@dataclass(slots=True)
class WorkspaceState:
    """Snapshot of the on-disk checkout for one unit."""

    root: str
    branch: str | None
    dirty: bool
    pending_stashes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class InFlightOperation:
    """The currently running cancellable step for a unit."""

    kind: OperationKind
    cancel: CancellationToken
    started_at: datetime


@dataclass(slots=True)
class QueuedMessage:
    """Leased or inspected queue message."""

    seq: int
    queue_name: str
    body: dict[str, Any]
    status: QueueMessageStatus
    attempts: int
    lease_owner: str | None
    lease_expires_at: datetime | None
    created_at: datetime
    last_error: str | None = None


@dataclass(slots=True)
class ResultView:
    """Stored outbound result message."""

    seq: int
    unit_key: str
    command_id: str
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class PipelineRun:
    """One message's journey through the pipeline; never reused."""

    command_id: str
    session_id: str
    thread_id: str
    stage: PipelineStage = PipelineStage.EDITING
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)
    commit_ref: str | None = None
    build_success: bool = False
    deploy_success: bool = False
    push_success: bool = False
    preview_url: str | None = None
    error: str | None = None
    retryable: bool = False
    interrupted_during: OperationKind | None = None

    @property
    def interrupted(self) -> bool:
        return self.stage == PipelineStage.INTERRUPTED

    @property
    def success(self) -> bool:
        return self.stage == PipelineStage.DONE

    def to_result(self) -> dict[str, Any]:
        """Render the outbound result message."""

        payload: dict[str, Any] = {
            "commandId": self.command_id,
            "sessionId": self.session_id,
            "success": self.success,
            "summary": self.summary,
            "filesChanged": list(self.files_changed),
            "buildSuccess": self.build_success,
            "deploySuccess": self.deploy_success,
            "pushSuccess": self.push_success,
            "interrupted": self.interrupted,
        }
        if self.preview_url is not None:
            payload["previewUrl"] = self.preview_url
        if self.error is not None:
            payload["error"] = self.error
        return payload
