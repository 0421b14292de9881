"""Use-case services for the claim and work queues."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from edit_worker.storage.common import utc_now
from edit_worker.worker.contracts import ClaimRequest, WorkMessage
from edit_worker.worker.models import UNCLAIMED_QUEUE, ClaimStatus, WorkUnit
from edit_worker.worker.repository import WorkerRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueWork:
    """High-level command to enqueue one edit instruction."""

    project_id: str
    user_id: str
    thread_id: str
    instruction: str
    session_id: str | None = None
    command_id: str | None = None
    repo_url: str | None = None


@dataclass(slots=True)
class EnqueuedWork:
    message: WorkMessage
    seq: int
    claim_request_seq: int | None


class WorkQueueService:
    """Writes work messages and the claim requests that wake a worker for them."""

    def __init__(self, *, repository: WorkerRepository) -> None:
        self.repository = repository

    def enqueue_work(self, command: EnqueueWork) -> EnqueuedWork:
        """Append to the unit's private stream; request a claim if nobody holds it."""

        if "#" in command.project_id or "#" in command.user_id:
            raise ValueError("project and user identifiers must not contain '#'")
        if not command.thread_id.strip():
            raise ValueError("thread identifier must not be empty")
        unit = WorkUnit(project_id=command.project_id, user_id=command.user_id)
        message = WorkMessage(
            session_id=command.session_id or str(uuid4()),
            command_id=command.command_id or str(uuid4()),
            thread_id=command.thread_id,
            instruction=command.instruction,
            timestamp=utc_now().isoformat(),
            repo_url=command.repo_url,
        )
        seq = self.repository.enqueue(queue_name=unit.queue_name, body=message.to_payload())

        claim = self.repository.get_claim(unit)
        claim_request_seq: int | None = None
        if claim is None or claim.status == ClaimStatus.RELEASED:
            claim_request_seq = self.enqueue_claim_request(unit=unit, thread_id=command.thread_id)
        logger.info(
            "Enqueued %s for %s (seq=%d, claim_request=%s)",
            message.command_id,
            unit,
            seq,
            claim_request_seq,
        )
        return EnqueuedWork(message=message, seq=seq, claim_request_seq=claim_request_seq)

    def enqueue_claim_request(self, *, unit: WorkUnit, thread_id: str = "") -> int:
        request = ClaimRequest(
            project_id=unit.project_id,
            user_id=unit.user_id,
            thread_id=thread_id,
            queue_ref=unit.queue_name,
        )
        return self.repository.enqueue(queue_name=UNCLAIMED_QUEUE, body=request.to_payload())
