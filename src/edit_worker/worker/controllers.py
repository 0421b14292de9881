"""Controllers for edit-worker CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from edit_worker.config import Settings
from edit_worker.worker.claims import ClaimCoordinator
from edit_worker.worker.consumer import UnitRuntime, WorkQueueConsumer
from edit_worker.worker.contracts import dumps_payload
from edit_worker.worker.models import ClaimStatus, QueueMessageStatus, WorkUnit
from edit_worker.worker.repository import WorkerRepository
from edit_worker.worker.services import EnqueueWork, WorkQueueService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the consumer loop."""

    db_path: Path | None
    once: bool
    max_messages: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class EnqueueWorkCommand:
    """CLI input for enqueueing an edit instruction."""

    db_path: Path | None
    project_id: str
    user_id: str
    thread_id: str
    instruction: str
    repo_url: str | None = None
    session_id: str | None = None
    command_id: str | None = None


@dataclass(slots=True)
class EnqueueClaimCommand:
    """CLI input for enqueueing a bare claim request."""

    db_path: Path | None
    project_id: str
    user_id: str
    thread_id: str = ""


@dataclass(slots=True)
class ClaimsListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class UnitCommand:
    """CLI input addressing one project+user unit."""

    db_path: Path | None
    project_id: str
    user_id: str


@dataclass(slots=True)
class ClaimsReapCommand:
    db_path: Path | None
    stale_after_seconds: float | None


@dataclass(slots=True)
class ResultsListCommand:
    db_path: Path | None
    project_id: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class DeadLettersListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class ThreadShowCommand:
    db_path: Path | None
    project_id: str
    user_id: str
    thread_id: str


class WorkerCliController:
    """Coordinates consumer, queue, and inspection CLI operations."""

    def run(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            coordinator = ClaimCoordinator(
                repository=repository,
                worker_id=settings.claims.worker_id,
                renew_interval_seconds=settings.claims.renew_interval_seconds,
            )
            consumer = WorkQueueConsumer(
                repository=repository,
                coordinator=coordinator,
                unit_factory=UnitRuntime(
                    settings=settings,
                    repository=repository,
                    coordinator=coordinator,
                ),
                max_units=settings.claims.max_units,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
            )
            logger.info("Worker %s starting", coordinator.worker_id)
            summary = consumer.run_loop(
                max_messages=command.max_messages,
                max_idle_polls=1 if command.once else command.max_idle_polls,
                stop_when_empty=command.once,
            )

        lines = [
            f"Worker {settings.claims.worker_id} summary: "
            f"claimed={summary.claimed} already_owned={summary.already_owned} "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} interrupted={summary.interrupted} "
            f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
            f"idle_polls={summary.idle_polls}",
        ]
        lines.extend(
            f"- {key}: {reason.value if reason else 'running'}"
            for key, reason in sorted(summary.units.items())
        )
        return lines

    def enqueue_work(self, command: EnqueueWorkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            enqueued = WorkQueueService(repository=repository).enqueue_work(
                EnqueueWork(
                    project_id=command.project_id,
                    user_id=command.user_id,
                    thread_id=command.thread_id,
                    instruction=command.instruction,
                    session_id=command.session_id,
                    command_id=command.command_id,
                    repo_url=command.repo_url,
                ),
            )

        lines = [
            "Work enqueued: "
            f"command_id={enqueued.message.command_id} seq={enqueued.seq} "
            f"thread={enqueued.message.thread_id}",
        ]
        if enqueued.claim_request_seq is not None:
            lines.append(f"Claim requested: seq={enqueued.claim_request_seq}")
        return lines

    def enqueue_claim(self, command: EnqueueClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        unit = WorkUnit(project_id=command.project_id, user_id=command.user_id)
        with _repository(settings) as repository:
            seq = WorkQueueService(repository=repository).enqueue_claim_request(
                unit=unit,
                thread_id=command.thread_id,
            )
        return [f"Claim requested: unit={unit} seq={seq}"]

    def list_claims(self, command: ClaimsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ClaimStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            claims = repository.list_claims(status=status)

        if not claims:
            return ["No claims."]
        lines = ["Claims:"]
        lines.extend(
            f"- {claim.unit} owner={claim.worker_id} status={claim.status.value} "
            f"claimed_at={claim.claimed_at.isoformat()} "
            f"last_activity={claim.last_activity_at.isoformat()}"
            for claim in claims
        )
        return lines

    def release_claim(self, command: UnitCommand) -> list[str]:
        """Force-release a claim regardless of owner (operator action)."""

        settings = Settings.from_env(db_path=command.db_path)
        unit = WorkUnit(project_id=command.project_id, user_id=command.user_id)
        with _repository(settings) as repository:
            claim = repository.get_claim(unit)
            if claim is None:
                return [f"No claim for {unit}."]
            released = repository.release_claim(unit=unit, worker_id=claim.worker_id)
        if not released:
            return [f"Claim for {unit} was already released."]
        return [f"Claim released: unit={unit} previous_owner={claim.worker_id}"]

    def reap_claims(self, command: ClaimsReapCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after = (
            command.stale_after_seconds
            if command.stale_after_seconds is not None
            else settings.claims.reclaim_timeout_seconds
        )
        with _repository(settings) as repository:
            reaped = repository.reap_stale_claims(stale_after=timedelta(seconds=stale_after))
            service = WorkQueueService(repository=repository)
            for unit in reaped:
                if repository.has_newer_message(queue_name=unit.queue_name, after_seq=0):
                    service.enqueue_claim_request(unit=unit)

        if not reaped:
            return ["No stale claims."]
        return [f"Reaped {len(reaped)} stale claim(s):", *(f"- {unit}" for unit in reaped)]

    def list_results(self, command: ResultsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        unit = (
            WorkUnit(project_id=command.project_id, user_id=command.user_id)
            if command.project_id and command.user_id
            else None
        )
        with _repository(settings) as repository:
            results = repository.list_results(unit=unit, limit=command.limit)

        if not results:
            return ["No results."]
        lines = ["Results:"]
        lines.extend(
            f"- #{result.seq} {result.unit_key} {dumps_payload(result.payload)}"
            for result in results
        )
        return lines

    def list_dead_letters(self, command: DeadLettersListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            messages = repository.list_messages(
                status=QueueMessageStatus.DEAD_LETTER,
                limit=command.limit,
            )

        if not messages:
            return ["No dead letters."]
        lines = ["Dead letters:"]
        lines.extend(
            f"- #{message.seq} queue={message.queue_name} attempts={message.attempts} "
            f"error={message.last_error or '-'} body={dumps_payload(message.body)}"
            for message in messages
        )
        return lines

    def show_thread(self, command: ThreadShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        unit = WorkUnit(project_id=command.project_id, user_id=command.user_id)
        with _repository(settings) as repository:
            context = repository.load_thread_context(unit=unit, thread_id=command.thread_id)

        if context is None:
            return [f"No thread {command.thread_id} for {unit}."]
        lines = [
            f"Thread {context.thread_id} for {unit}",
            f"Branch: {context.branch}",
            f"Last commit: {context.last_commit or '-'}",
            f"History ({len(context.history)}):",
        ]
        for entry in context.history:
            marker = " [interrupted]" if entry.interrupted else ""
            lines.append(
                f"- {entry.timestamp} {entry.command_id}{marker}: {entry.summary or '-'}",
            )
        return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkerRepository]:
    repository = WorkerRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
