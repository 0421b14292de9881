"""Claim-stream and per-unit stream consumers."""

from __future__ import annotations

import logging
import re
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Protocol

from edit_worker.config import Settings
from edit_worker.worker.claims import ClaimCoordinator, ClaimLease
from edit_worker.worker.contracts import WorkMessage, parse_claim_request, parse_work_message
from edit_worker.worker.errors import ClaimLost, ContractError, WorkspaceCorrupt
from edit_worker.worker.executor import CliInstructionExecutor
from edit_worker.worker.models import (
    UNCLAIMED_QUEUE,
    ClaimOutcome,
    ClaimStatus,
    PipelineRun,
    PipelineStage,
    QueuedMessage,
    QueueMessageStatus,
    WorkUnit,
)
from edit_worker.worker.processor import MessageProcessor, PipelineHandle, ProcessorConfig
from edit_worker.worker.publisher import (
    ArtifactPublisher,
    CommandMirrorTransport,
    LocalMirrorTransport,
    MirrorTransport,
    SiteBuilder,
)
from edit_worker.worker.repository import WorkerRepository
from edit_worker.worker.services import WorkQueueService
from edit_worker.worker.steps import InterruptibleStep
from edit_worker.worker.workspace import ConflictStrategy, VersionControlWorkspace

logger = logging.getLogger(__name__)

_REPO_NAME_SUFFIX = re.compile(r"\.git$")


class RetryDecision(str, Enum):
    """What to do with a message whose pipeline reached a terminal stage."""

    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class RetryVerdict(NamedTuple):
    decision: RetryDecision
    delay_seconds: float = 0.0


class RetryPolicy(Protocol):
    """Hook deciding between acknowledgement, redelivery and dead-lettering."""

    def decide(self, *, run: PipelineRun, attempts: int) -> RetryVerdict:
        """``attempts`` counts deliveries so far, including the current one."""


class BoundedRetryPolicy:
    """Redeliver retryable failures with exponential backoff, then dead-letter."""

    def __init__(self, *, max_attempts: int = 3, retry_delay_seconds: float = 5.0) -> None:
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds

    def decide(self, *, run: PipelineRun, attempts: int) -> RetryVerdict:
        if run.stage != PipelineStage.FAILED or not run.retryable:
            return RetryVerdict(RetryDecision.ACK)
        if attempts < self.max_attempts:
            delay = self.retry_delay_seconds * (2 ** max(attempts - 1, 0))
            return RetryVerdict(RetryDecision.RETRY, delay)
        return RetryVerdict(RetryDecision.DEAD_LETTER)


class UnitStopReason(str, Enum):
    """Why a unit consumer stopped pulling its private stream."""

    STOPPED = "stopped"
    IDLE = "idle"
    DRAINED = "drained"
    CLAIM_LOST = "claim_lost"
    WORKSPACE_CORRUPT = "workspace_corrupt"


@dataclass(slots=True)
class UnitRunSummary:
    """Per-unit counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    interrupted: int = 0
    retried: int = 0
    dead_lettered: int = 0
    stop_reason: UnitStopReason | None = None


@dataclass(slots=True)
class ConsumerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    claim_requests: int = 0
    claimed: int = 0
    already_owned: int = 0
    claim_errors: int = 0
    idle_polls: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    interrupted: int = 0
    retried: int = 0
    dead_lettered: int = 0
    units: dict[str, UnitStopReason | None] = field(default_factory=dict)

    def merge_unit(self, unit: WorkUnit, summary: UnitRunSummary) -> None:
        self.processed += summary.processed
        self.succeeded += summary.succeeded
        self.failed += summary.failed
        self.interrupted += summary.interrupted
        self.retried += summary.retried
        self.dead_lettered += summary.dead_lettered
        self.units[unit.key] = summary.stop_reason

    def merge(self, other: ConsumerRunSummary) -> None:
        self.claim_requests += other.claim_requests
        self.claimed += other.claimed
        self.already_owned += other.already_owned
        self.claim_errors += other.claim_errors
        self.idle_polls += other.idle_polls
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.interrupted += other.interrupted
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.units.update(other.units)


class MessageBudget:
    """Thread-safe cap on how many work messages the worker may lease."""

    def __init__(self, limit: int | None = None) -> None:
        self.limit = limit
        self._taken = 0
        self._lock = threading.Lock()

    def try_take(self) -> bool:
        with self._lock:
            if self.limit is not None and self._taken >= self.limit:
                return False
            self._taken += 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self._taken = max(0, self._taken - 1)

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self.limit is not None and self._taken >= self.limit


@dataclass(slots=True)
class _Delivery:
    message: QueuedMessage
    work: WorkMessage
    handle: PipelineHandle
    interrupt_requested: bool = False


class UnitConsumer:
    """Pull one claimed unit's private stream strictly in arrival order.

    Only the head of the stream is ever leased. While its pipeline runs the
    consumer keeps the claim and the message lease alive and watches for a
    newer message; when one shows up the running pipeline is interrupted,
    settled and acknowledged before the newer message is leased.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        unit: WorkUnit,
        repository: WorkerRepository,
        lease: ClaimLease,
        processor: MessageProcessor,
        owner: str,
        retry_policy: RetryPolicy | None = None,
        poll_interval_seconds: float = 1.0,
        visibility_timeout_seconds: float = 300.0,
        idle_release_seconds: float = 1_800.0,
        stop_when_empty: bool = False,
        budget: MessageBudget | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.unit = unit
        self.repository = repository
        self.lease = lease
        self.processor = processor
        self.owner = owner
        self.retry_policy = retry_policy or BoundedRetryPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.idle_release_seconds = idle_release_seconds
        self.stop_when_empty = stop_when_empty
        self.budget = budget or MessageBudget()
        self.stop_event = stop_event or threading.Event()
        self.summary = UnitRunSummary()
        self._current: _Delivery | None = None

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> UnitRunSummary:
        """Consume until stopped, idle, drained, or the claim is lost."""

        logger.info("Consuming %s", self.unit.queue_name)
        idle_since = time.monotonic()
        try:
            while True:
                if self._current is None and self.summary.stop_reason is not None:
                    break
                if self._current is None and self.stop_event.is_set():
                    self.summary.stop_reason = UnitStopReason.STOPPED
                    break

                try:
                    self.lease.heartbeat(
                        status=ClaimStatus.ACTIVE if self._current else ClaimStatus.IDLE,
                    )
                except ClaimLost as error:
                    logger.error("Stopping %s: %s", self.unit, error)
                    self.summary.stop_reason = UnitStopReason.CLAIM_LOST
                    self._drain()
                    break

                if self._current is not None:
                    if self._tend():
                        idle_since = time.monotonic()
                    continue

                if not self._start_next():
                    if self.summary.stop_reason is not None:
                        break
                    if time.monotonic() - idle_since >= self.idle_release_seconds:
                        logger.info("Releasing idle unit %s", self.unit)
                        self.summary.stop_reason = UnitStopReason.IDLE
                        break
                    self.stop_event.wait(self.poll_interval_seconds)
        except WorkspaceCorrupt as error:
            logger.error("Halting %s, workspace unrecoverable: %s", self.unit, error)
            self.summary.stop_reason = UnitStopReason.WORKSPACE_CORRUPT
        finally:
            self._finish()
        return self.summary

    def _confirm_claim(self, status: ClaimStatus) -> bool:
        """Renew the claim now; on loss record the stop reason and return False."""

        try:
            self.lease.heartbeat(status=status, force=True)
        except ClaimLost as error:
            logger.error("Stopping %s: %s", self.unit, error)
            self.summary.stop_reason = UnitStopReason.CLAIM_LOST
            return False
        return True

    def _start_next(self) -> bool:
        if not self._confirm_claim(ClaimStatus.IDLE):
            return False
        if not self.budget.try_take():
            self.summary.stop_reason = UnitStopReason.DRAINED
            return False
        message = self.repository.lease_next(
            queue_name=self.unit.queue_name,
            owner=self.owner,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
            fifo=True,
        )
        if message is None:
            self.budget.give_back()
            if self.stop_when_empty:
                self.summary.stop_reason = UnitStopReason.DRAINED
            return False

        try:
            work = parse_work_message(message.body)
        except ContractError as error:
            logger.warning("Dead-lettering malformed message %d: %s", message.seq, error)
            self.repository.dead_letter_message(seq=message.seq, owner=self.owner, error=str(error))
            self.summary.dead_lettered += 1
            return True

        if not self._confirm_claim(ClaimStatus.ACTIVE):
            self.repository.release_message(seq=message.seq, owner=self.owner)
            self.budget.give_back()
            return False

        logger.info(
            "Leased %s (seq=%d attempt=%d) for %s",
            work.command_id,
            message.seq,
            message.attempts,
            self.unit,
        )
        handle = self.processor.submit(work)
        self._current = _Delivery(message=message, work=work, handle=handle)
        return True

    def _tend(self) -> bool:
        """Advance the in-flight delivery; True once it has been settled."""

        current = self._current
        if current is None:
            return False
        if current.handle.done:
            self._settle(current)
            return True

        if not self.repository.extend_lease(
            seq=current.message.seq,
            owner=self.owner,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
        ):
            logger.warning("Lease on message %d expired while processing", current.message.seq)
        if not current.interrupt_requested and self.repository.has_newer_message(
            queue_name=self.unit.queue_name,
            after_seq=current.message.seq,
        ):
            logger.info("Newer message for %s, interrupting %s", self.unit, current.work.command_id)
            current.interrupt_requested = True
            current.handle.interrupt()
        current.handle.wait(self.poll_interval_seconds)
        return False

    def _drain(self) -> None:
        current = self._current
        if current is None:
            return
        while not current.handle.wait(self.poll_interval_seconds):
            self.repository.extend_lease(
                seq=current.message.seq,
                owner=self.owner,
                visibility_timeout_seconds=self.visibility_timeout_seconds,
            )
        self._settle(current)

    def _settle(self, current: _Delivery) -> None:
        self._current = None
        message = current.message
        try:
            run = current.handle.result()
        except WorkspaceCorrupt as error:
            self.repository.release_message(seq=message.seq, owner=self.owner, error=str(error))
            raise
        except Exception as error:  # noqa: BLE001
            logger.exception("Pipeline for %s crashed", current.work.command_id)
            run = PipelineRun(
                command_id=current.work.command_id,
                session_id=current.work.session_id,
                thread_id=current.work.thread_id,
                stage=PipelineStage.FAILED,
                error=f"{type(error).__name__}: {error}",
                retryable=True,
            )

        verdict = self.retry_policy.decide(run=run, attempts=message.attempts)
        if verdict.decision == RetryDecision.RETRY:
            self.repository.release_message(
                seq=message.seq,
                owner=self.owner,
                delay_seconds=verdict.delay_seconds,
                error=run.error,
            )
            self.summary.retried += 1
            self.budget.give_back()
            logger.info(
                "Retrying %s in %.1fs (attempt %d)",
                run.command_id,
                verdict.delay_seconds,
                message.attempts,
            )
            return

        self.repository.add_result(unit=self.unit, payload=run.to_result())
        self.summary.processed += 1
        if verdict.decision == RetryDecision.DEAD_LETTER:
            self.repository.dead_letter_message(seq=message.seq, owner=self.owner, error=run.error)
            self.summary.dead_lettered += 1
            self.summary.failed += 1
            logger.warning("Dead-lettered %s after %d attempts", run.command_id, message.attempts)
            return

        if not self.repository.ack_message(seq=message.seq, owner=self.owner):
            logger.warning("Ack of message %d rejected; lease was lost", message.seq)
        if run.interrupted:
            self.summary.interrupted += 1
        elif run.success:
            self.summary.succeeded += 1
        else:
            self.summary.failed += 1

    def _finish(self) -> None:
        reason = self.summary.stop_reason
        if reason == UnitStopReason.CLAIM_LOST:
            return
        self.lease.release()
        if reason == UnitStopReason.WORKSPACE_CORRUPT:
            return
        head = self.repository.list_messages(
            queue_name=self.unit.queue_name,
            status=QueueMessageStatus.PENDING,
            limit=1,
        )
        if head:
            thread_id = str(head[0].body.get("threadId") or "")
            WorkQueueService(repository=self.repository).enqueue_claim_request(
                unit=self.unit,
                thread_id=thread_id,
            )
            logger.info("Re-requested claim for %s with pending messages", self.unit)


UnitConsumerFactory = Callable[..., UnitConsumer]


class WorkQueueConsumer:
    """Consume the shared unclaimed stream and run one thread per claimed unit."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkerRepository,
        coordinator: ClaimCoordinator,
        unit_factory: UnitConsumerFactory,
        max_units: int = 1,
        poll_interval_seconds: float = 1.0,
        visibility_timeout_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.coordinator = coordinator
        self.unit_factory = unit_factory
        self.max_units = max_units
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.budget = MessageBudget()
        self.stop_when_empty = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._units: dict[str, tuple[UnitConsumer, threading.Thread]] = {}

    @property
    def worker_id(self) -> str:
        return self.coordinator.worker_id

    @property
    def active_units(self) -> list[WorkUnit]:
        return [consumer.unit for consumer, _ in self._units.values()]

    def run_once(self) -> ConsumerRunSummary:
        """Handle at most one claim request from the shared stream."""

        summary = ConsumerRunSummary()
        self._collect_finished(summary)
        if self._stop_requested or len(self._units) >= self.max_units or self.budget.exhausted:
            summary.idle_polls = 1
            return summary

        message = self.repository.lease_next(
            queue_name=UNCLAIMED_QUEUE,
            owner=self.worker_id,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
            fifo=False,
        )
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.claim_requests = 1
        try:
            request = parse_claim_request(message.body)
        except ContractError as error:
            logger.warning("Dead-lettering malformed claim request %d: %s", message.seq, error)
            self.repository.dead_letter_message(seq=message.seq, owner=self.worker_id, error=str(error))
            return summary

        unit = request.unit
        if unit.key in self._units:
            summary.already_owned = 1
            self.repository.ack_message(seq=message.seq, owner=self.worker_id)
            return summary

        claim = self.coordinator.try_claim(unit)
        if claim.outcome == ClaimOutcome.CLAIMED:
            summary.claimed = 1
            self._start_unit(unit)
            self.repository.ack_message(seq=message.seq, owner=self.worker_id)
        elif claim.outcome == ClaimOutcome.ALREADY_OWNED:
            summary.already_owned = 1
            self.repository.ack_message(seq=message.seq, owner=self.worker_id)
        else:
            summary.claim_errors = 1
            self.repository.release_message(
                seq=message.seq,
                owner=self.worker_id,
                delay_seconds=self.poll_interval_seconds,
                error=claim.error,
            )
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = None,
        stop_when_empty: bool = False,
    ) -> ConsumerRunSummary:
        """Run until stopped, or until idle/drained when limits are given.

        Args:
            max_messages: Stop after this many work messages were leased.
            max_idle_polls: Exit after this many consecutive polls that found
                no claim request while no unit was active.
            stop_when_empty: Release each unit as soon as its stream is empty
                instead of waiting for the idle-release timeout.
        """

        self.budget = MessageBudget(max_messages)
        self.stop_when_empty = stop_when_empty
        aggregate = ConsumerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            try:
                while not self._stop_requested:
                    summary = self.run_once()
                    aggregate.merge(summary)
                    if self.budget.exhausted and not self._units:
                        break
                    if summary.claim_requests == 0 and not self._units:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    else:
                        consecutive_idle = 0
                    if summary.claim_requests == 0:
                        self._sleep_with_stop(self.poll_interval_seconds)
            finally:
                self.shutdown()
                final = ConsumerRunSummary()
                self._collect_finished(final)
                aggregate.merge(final)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def shutdown(self, timeout: float | None = None) -> None:
        """Ask every unit to finish its current message and release its claim."""

        for consumer, _ in self._units.values():
            consumer.stop()
        for _, thread in self._units.values():
            thread.join(timeout)

    def _start_unit(self, unit: WorkUnit) -> None:
        consumer = self.unit_factory(
            unit=unit,
            budget=self.budget,
            stop_when_empty=self.stop_when_empty,
        )
        thread = threading.Thread(
            target=consumer.run,
            daemon=True,
            name=f"unit-{unit.key}",
        )
        self._units[unit.key] = (consumer, thread)
        thread.start()

    def _collect_finished(self, summary: ConsumerRunSummary) -> None:
        for key, (consumer, thread) in list(self._units.items()):
            if thread.is_alive():
                continue
            del self._units[key]
            summary.merge_unit(consumer.unit, consumer.summary)
            logger.info(
                "Unit %s stopped (%s)",
                consumer.unit,
                consumer.summary.stop_reason.value if consumer.summary.stop_reason else "-",
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            logger.info("Received %s, finishing in-flight work", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class UnitRuntime:
    """Builds the processor stack for a newly claimed unit from settings."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: WorkerRepository,
        coordinator: ClaimCoordinator,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.coordinator = coordinator
        self.retry_policy = BoundedRetryPolicy(
            max_attempts=settings.queue.max_attempts,
            retry_delay_seconds=settings.queue.retry_delay_seconds,
        )

    def workspace_path(self, unit: WorkUnit) -> Path:
        """``{root}/{project}/{user}/{repo name}`` with ``project`` as fallback name.

        The first resolved path is pinned for the unit; later claims reuse it
        even when a repo URL becomes known afterwards.
        """

        pinned = self.repository.get_workspace_path(unit)
        if pinned is not None:
            return pinned
        repo_url = self.repository.get_repo_url(unit) or self._peek_repo_url(unit)
        candidate = (
            self.settings.git.workspace_root
            / unit.project_id
            / unit.user_id
            / repo_name_from_url(repo_url)
        )
        return self.repository.pin_workspace_path(unit=unit, workspace_path=candidate)

    def build_processor(self, unit: WorkUnit) -> MessageProcessor:
        settings = self.settings
        step = InterruptibleStep(grace_seconds=settings.steps.grace_seconds)
        config = ProcessorConfig(
            unit=unit,
            workspace_path=self.workspace_path(unit),
            preview_domain=settings.publish.domain,
            push_enabled=settings.git.push_enabled,
        )
        workspace = VersionControlWorkspace(
            root=config.workspace_path,
            default_branch=settings.git.default_branch,
            protected_branches=settings.git.protected_branches,
            remote=settings.git.remote_name,
            conflict_strategy=ConflictStrategy(settings.git.conflict_strategy),
            author_name=settings.git.author_name,
            author_email=settings.git.author_email,
        )
        executor = CliInstructionExecutor(
            command_template=settings.executor.command_template,
            step=step,
            timeout_seconds=settings.steps.edit_timeout_seconds,
        )
        builder = SiteBuilder(
            command=settings.build.command,
            output_dir=settings.build.output_dir,
            step=step,
            timeout_seconds=settings.steps.build_timeout_seconds,
        )
        return MessageProcessor(
            config=config,
            repository=self.repository,
            workspace=workspace,
            executor=executor,
            builder=builder,
            publisher=ArtifactPublisher(self._transport(step)),
        )

    def __call__(
        self,
        *,
        unit: WorkUnit,
        budget: MessageBudget | None = None,
        stop_when_empty: bool = False,
    ) -> UnitConsumer:
        return UnitConsumer(
            unit=unit,
            repository=self.repository,
            lease=self.coordinator.lease(unit),
            processor=self.build_processor(unit),
            owner=self.coordinator.worker_id,
            retry_policy=self.retry_policy,
            poll_interval_seconds=self.settings.queue.poll_interval_seconds,
            visibility_timeout_seconds=self.settings.queue.visibility_timeout_seconds,
            idle_release_seconds=self.settings.claims.idle_release_seconds,
            stop_when_empty=stop_when_empty,
            budget=budget,
        )

    def _transport(self, step: InterruptibleStep) -> MirrorTransport:
        publish = self.settings.publish
        if publish.mode == "command":
            return CommandMirrorTransport(
                command_template=publish.command_template,
                step=step,
                timeout_seconds=self.settings.steps.deploy_timeout_seconds,
            )
        return LocalMirrorTransport(publish.local_root)

    def _peek_repo_url(self, unit: WorkUnit) -> str | None:
        pending = self.repository.list_messages(
            queue_name=unit.queue_name,
            status=QueueMessageStatus.PENDING,
            limit=20,
        )
        for message in pending:
            repo_url = message.body.get("repoUrl")
            if isinstance(repo_url, str) and repo_url:
                return repo_url
        return None


def repo_name_from_url(repo_url: str | None) -> str:
    """Last path segment of a clone URL without ``.git``; ``project`` when unknown."""

    if not repo_url:
        return "project"
    tail = re.split(r"[/:]", repo_url.rstrip("/"))[-1]
    name = _REPO_NAME_SUFFIX.sub("", tail)
    return name or "project"
