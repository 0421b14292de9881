"""Wire contracts for work, claim request, and result messages."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from edit_worker.worker.errors import ContractError
from edit_worker.worker.models import WorkUnit


@dataclass(slots=True)
class WorkMessage:
    """Inbound edit instruction consumed from a unit's private stream."""

    session_id: str
    command_id: str
    thread_id: str
    instruction: str
    timestamp: str
    repo_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sessionId": self.session_id,
            "commandId": self.command_id,
            "threadId": self.thread_id,
            "instruction": self.instruction,
            "timestamp": self.timestamp,
        }
        if self.repo_url:
            payload["repoUrl"] = self.repo_url
        return payload


@dataclass(slots=True)
class ClaimRequest:
    """Request on the shared unclaimed stream to take ownership of a unit."""

    project_id: str
    user_id: str
    thread_id: str
    queue_ref: str

    @property
    def unit(self) -> WorkUnit:
        return WorkUnit(project_id=self.project_id, user_id=self.user_id)

    def to_payload(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "userId": self.user_id,
            "threadId": self.thread_id,
            "queueRef": self.queue_ref,
        }


def parse_work_message(payload: dict[str, Any]) -> WorkMessage:
    """Validate and deserialize an inbound work message."""

    if not isinstance(payload, dict):
        raise ContractError("work message must be a JSON object")
    repo_url = payload.get("repoUrl")
    if repo_url is not None and not isinstance(repo_url, str):
        raise ContractError("work message repoUrl must be a string")
    timestamp = payload.get("timestamp", "")
    if not isinstance(timestamp, (str, int, float)):
        raise ContractError("work message timestamp must be a string or number")
    instruction = payload.get("instruction")
    if not isinstance(instruction, str):
        raise ContractError("work message instruction must be a string")
    return WorkMessage(
        session_id=_required_str(payload, "sessionId", kind="work message"),
        command_id=_required_str(payload, "commandId", kind="work message"),
        thread_id=_required_str(payload, "threadId", kind="work message"),
        instruction=instruction,
        timestamp=str(timestamp),
        repo_url=repo_url or None,
    )


def parse_claim_request(payload: dict[str, Any]) -> ClaimRequest:
    """Validate and deserialize a claim request."""

    if not isinstance(payload, dict):
        raise ContractError("claim request must be a JSON object")
    project_id = _required_str(payload, "projectId", kind="claim request")
    user_id = _required_str(payload, "userId", kind="claim request")
    if "#" in project_id or "#" in user_id:
        raise ContractError("claim request projectId/userId must not contain '#'")
    queue_ref = payload.get("queueRef")
    if queue_ref is not None and not isinstance(queue_ref, str):
        raise ContractError("claim request queueRef must be a string")
    unit = WorkUnit(project_id=project_id, user_id=user_id)
    return ClaimRequest(
        project_id=project_id,
        user_id=user_id,
        thread_id=str(payload.get("threadId") or ""),
        queue_ref=queue_ref or unit.queue_name,
    )


def dumps_payload(payload: dict[str, Any]) -> str:
    """Serialize a message body using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def loads_payload(raw: str) -> dict[str, Any]:
    """Load a message body and validate the top-level object type."""

    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ContractError("Expected JSON object message body")
    return payload


def _required_str(payload: dict[str, Any], key: str, *, kind: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ContractError(f"{kind} {key} must be a non-empty string")
    return value.strip()
