from __future__ import annotations

import shlex
import sys
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import build_command, echo_template

from edit_worker.config import (
    BuildSettings,
    ClaimSettings,
    ExecutorSettings,
    GitSettings,
    PublishSettings,
    QueueSettings,
    Settings,
    StepSettings,
)
from edit_worker.worker.claims import ClaimCoordinator
from edit_worker.worker.consumer import (
    BoundedRetryPolicy,
    MessageBudget,
    RetryDecision,
    UnitConsumer,
    UnitRuntime,
    UnitStopReason,
    WorkQueueConsumer,
    repo_name_from_url,
)
from edit_worker.worker.models import (
    UNCLAIMED_QUEUE,
    ClaimStatus,
    OperationKind,
    PipelineRun,
    PipelineStage,
    QueueMessageStatus,
    WorkUnit,
)
from edit_worker.worker.repository import WorkerRepository
from edit_worker.worker.services import EnqueueWork, WorkQueueService

pytestmark = [
    allure.epic("Edit Worker"),
    allure.feature("Unit Consumers"),
]

UNIT = WorkUnit(project_id="proj-a", user_id="user-1")

_SLOW_WHEN_ASKED_SCRIPT = "\n".join(
    [
        "import json, sys, time",
        "instruction = sys.argv[1]",
        "if instruction.startswith('slow'):",
        "    time.sleep(30)",
        "with open('file.txt', 'a', encoding='utf-8') as handle:",
        "    handle.write(instruction + '\\n')",
        "print(json.dumps({'success': True, 'filesChanged': ['file.txt']}))",
    ],
)


def _python_template(script: str) -> str:
    head = " ".join(shlex.quote(part) for part in (sys.executable, "-c", script))
    return f"{head} {{instruction}}"


SLOW_WHEN_ASKED_EXECUTOR = _python_template(_SLOW_WHEN_ASKED_SCRIPT)
CRASHING_EXECUTOR = _python_template("import sys; sys.exit(2)")


def _settings(
    tmp_path: Path,
    *,
    executor_template: str | None = None,
    idle_release_seconds: float = 60.0,
) -> Settings:
    return Settings(
        db_path=tmp_path / "worker.db",
        claims=ClaimSettings(worker_id="w1", idle_release_seconds=idle_release_seconds),
        queue=QueueSettings(
            poll_interval_seconds=0.05,
            visibility_timeout_seconds=30.0,
            max_attempts=3,
            retry_delay_seconds=0.05,
        ),
        git=GitSettings(workspace_root=tmp_path / "workspaces"),
        steps=StepSettings(grace_seconds=1.0),
        build=BuildSettings(command=build_command()),
        publish=PublishSettings(local_root=tmp_path / "sites"),
        executor=ExecutorSettings(command_template=executor_template or echo_template()),
    )


def _runtime(
    settings: Settings,
    repository: WorkerRepository,
    *,
    renew_interval_seconds: float = 30.0,
) -> UnitRuntime:
    coordinator = ClaimCoordinator(
        repository=repository,
        worker_id=settings.claims.worker_id,
        renew_interval_seconds=renew_interval_seconds,
    )
    return UnitRuntime(settings=settings, repository=repository, coordinator=coordinator)


def _enqueue(
    repository: WorkerRepository,
    remote_repo: Path,
    command_id: str,
    instruction: str,
) -> int:
    enqueued = WorkQueueService(repository=repository).enqueue_work(
        EnqueueWork(
            project_id=UNIT.project_id,
            user_id=UNIT.user_id,
            thread_id="t-1",
            instruction=instruction,
            session_id="s-1",
            command_id=command_id,
            repo_url=str(remote_repo),
        ),
    )
    return enqueued.seq


def _start(consumer: UnitConsumer) -> threading.Thread:
    thread = threading.Thread(target=consumer.run, daemon=True)
    thread.start()
    return thread


def _join(thread: threading.Thread) -> None:
    thread.join(timeout=90)
    assert not thread.is_alive()


def _wait_for(predicate: Callable[[], bool], timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached in time"
        time.sleep(0.02)


def _editing(consumer: UnitConsumer) -> bool:
    operation = consumer.processor.in_flight
    return operation is not None and operation.kind == OperationKind.EDIT


def test_bounded_retry_policy() -> None:
    policy = BoundedRetryPolicy(max_attempts=3, retry_delay_seconds=5.0)
    done = PipelineRun(command_id="c", session_id="s", thread_id="t", stage=PipelineStage.DONE)
    permanent = PipelineRun(
        command_id="c",
        session_id="s",
        thread_id="t",
        stage=PipelineStage.FAILED,
    )
    transient = PipelineRun(
        command_id="c",
        session_id="s",
        thread_id="t",
        stage=PipelineStage.FAILED,
        retryable=True,
    )

    assert policy.decide(run=done, attempts=1).decision == RetryDecision.ACK
    assert policy.decide(run=permanent, attempts=1).decision == RetryDecision.ACK
    assert tuple(policy.decide(run=transient, attempts=1)) == (RetryDecision.RETRY, 5.0)
    assert tuple(policy.decide(run=transient, attempts=2)) == (RetryDecision.RETRY, 10.0)
    assert policy.decide(run=transient, attempts=3).decision == RetryDecision.DEAD_LETTER


def test_message_budget() -> None:
    budget = MessageBudget(2)

    assert budget.try_take()
    assert budget.try_take()
    assert budget.exhausted
    assert not budget.try_take()
    budget.give_back()
    assert not budget.exhausted
    assert MessageBudget().try_take()


@pytest.mark.parametrize(
    ("url", "name"),
    [
        ("https://github.com/acme/site.git", "site"),
        ("git@github.com:acme/landing.git", "landing"),
        ("/srv/git/blog.git/", "blog"),
        (None, "project"),
        ("", "project"),
    ],
)
def test_repo_name_from_url(url: str | None, name: str) -> None:
    assert repo_name_from_url(url) == name


def test_workspace_path_uses_remembered_repo(
    tmp_path: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    repository.remember_repo_url(unit=UNIT, repo_url="https://example.com/acme/site.git")

    assert runtime.workspace_path(UNIT) == tmp_path / "workspaces" / "proj-a" / "user-1" / "site"


def test_workspace_path_stays_put_once_repo_url_arrives(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    runtime.coordinator.try_claim(UNIT)
    fallback = tmp_path / "workspaces" / "proj-a" / "user-1" / "project"
    first = runtime(unit=UNIT, stop_when_empty=True)
    _enqueue(repository, remote_repo, "c-1", "Add a footer")

    first.run()
    runtime.coordinator.try_claim(UNIT)
    _enqueue(repository, remote_repo, "c-2", "Add a header")
    second = runtime(unit=UNIT, stop_when_empty=True)
    second.run()

    assert repository.get_repo_url(UNIT) == str(remote_repo)
    assert runtime.workspace_path(UNIT) == fallback
    assert second.processor.workspace.root == fallback
    assert (fallback / "file.txt").read_text("utf-8") == "Add a footer\nAdd a header\n"
    assert not (fallback.parent / "site").exists()


def test_unit_processes_messages_in_arrival_order(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    assert runtime.coordinator.try_claim(UNIT).claimed
    for index in range(1, 4):
        _enqueue(repository, remote_repo, f"c-{index}", f"Step {index}")

    consumer = runtime(unit=UNIT, stop_when_empty=True)
    summary = consumer.run()

    results = repository.list_results(unit=UNIT)
    assert [result.command_id for result in results] == ["c-1", "c-2", "c-3"]
    assert results[-1].payload["success"] is True
    assert summary.processed == 3
    assert summary.stop_reason == UnitStopReason.DRAINED
    pending = repository.list_messages(
        queue_name=UNIT.queue_name,
        status=QueueMessageStatus.PENDING,
    )
    assert pending == []
    claim = repository.get_claim(UNIT)
    assert claim is not None
    assert claim.status == ClaimStatus.RELEASED
    assert repository.list_messages(queue_name=UNCLAIMED_QUEUE) == []


def test_newer_message_interrupts_running_pipeline(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(
        _settings(tmp_path, executor_template=SLOW_WHEN_ASKED_EXECUTOR),
        repository,
    )
    runtime.coordinator.try_claim(UNIT)
    _enqueue(repository, remote_repo, "m1", "slow rewrite of the homepage")
    consumer = runtime(unit=UNIT, stop_when_empty=True)
    thread = _start(consumer)

    _wait_for(lambda: _editing(consumer))
    _enqueue(repository, remote_repo, "m2", "add footer")
    _join(thread)

    results = repository.list_results(unit=UNIT)
    assert [result.command_id for result in results] == ["m1", "m2"]
    assert results[0].payload["interrupted"] is True
    assert results[0].payload["success"] is False
    assert results[1].payload["success"] is True
    assert consumer.summary.interrupted == 1
    assert consumer.summary.succeeded == 1
    workspace_file = runtime.workspace_path(UNIT) / "file.txt"
    assert workspace_file.read_text("utf-8") == "add footer\n"


def test_transient_failures_are_retried_then_dead_lettered(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(
        _settings(tmp_path, executor_template=CRASHING_EXECUTOR, idle_release_seconds=1.0),
        repository,
    )
    runtime.coordinator.try_claim(UNIT)
    seq = _enqueue(repository, remote_repo, "c-1", "Add a footer")

    summary = runtime(unit=UNIT).run()

    assert summary.retried == 2
    assert summary.dead_lettered == 1
    assert summary.failed == 1
    assert summary.stop_reason == UnitStopReason.IDLE
    message = repository.get_message(seq)
    assert message is not None
    assert message.status == QueueMessageStatus.DEAD_LETTER
    assert message.attempts == 3
    results = repository.list_results(unit=UNIT)
    assert len(results) == 1
    assert results[0].payload["success"] is False
    assert results[0].payload["error"] == "EditExecutionFailed: Exited with code 2"


def test_malformed_work_message_is_dead_lettered(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    runtime.coordinator.try_claim(UNIT)
    bad = repository.enqueue(queue_name=UNIT.queue_name, body={"instruction": "no ids"})
    _enqueue(repository, remote_repo, "c-1", "Add a footer")

    summary = runtime(unit=UNIT, stop_when_empty=True).run()

    assert summary.dead_lettered == 1
    assert summary.processed == 1
    message = repository.get_message(bad)
    assert message is not None
    assert message.status == QueueMessageStatus.DEAD_LETTER


def test_lost_claim_stops_the_unit(
    tmp_path: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository, renew_interval_seconds=0.05)
    runtime.coordinator.try_claim(UNIT)
    consumer = runtime(unit=UNIT)
    thread = _start(consumer)

    assert repository.reap_stale_claims(stale_after=timedelta(seconds=0)) == [UNIT]
    _join(thread)

    assert consumer.summary.stop_reason == UnitStopReason.CLAIM_LOST
    assert consumer.lease.lost is True
    assert repository.list_messages(queue_name=UNCLAIMED_QUEUE) == []


def test_reclaimed_unit_is_not_consumed_by_previous_owner(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    assert runtime.coordinator.try_claim(UNIT).claimed
    consumer = runtime(unit=UNIT, stop_when_empty=True)
    assert repository.reap_stale_claims(stale_after=timedelta(seconds=0)) == [UNIT]
    other = ClaimCoordinator(repository=repository, worker_id="w2")
    assert other.try_claim(UNIT).claimed
    seq = _enqueue(repository, remote_repo, "c-1", "Add a footer")

    summary = consumer.run()

    assert summary.stop_reason == UnitStopReason.CLAIM_LOST
    assert summary.processed == 0
    assert repository.list_results(unit=UNIT) == []
    message = repository.get_message(seq)
    assert message is not None
    assert message.status == QueueMessageStatus.PENDING
    assert message.attempts == 0
    claim = repository.get_claim(UNIT)
    assert claim is not None
    assert claim.worker_id == "w2"
    assert claim.status == ClaimStatus.ACTIVE


def test_claim_lost_mid_processing_settles_in_flight_and_stops(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(
        _settings(tmp_path, executor_template=echo_template("--pre-delay", "2")),
        repository,
        renew_interval_seconds=0.05,
    )
    runtime.coordinator.try_claim(UNIT)
    _enqueue(repository, remote_repo, "m1", "Add a footer")
    consumer = runtime(unit=UNIT)
    thread = _start(consumer)

    _wait_for(lambda: _editing(consumer))
    assert repository.reap_stale_claims(stale_after=timedelta(seconds=0)) == [UNIT]
    assert ClaimCoordinator(repository=repository, worker_id="w2").try_claim(UNIT).claimed
    m2 = _enqueue(repository, remote_repo, "m2", "Add a header")
    _join(thread)

    assert consumer.summary.stop_reason == UnitStopReason.CLAIM_LOST
    assert consumer.summary.processed == 1
    results = repository.list_results(unit=UNIT)
    assert [result.command_id for result in results] == ["m1"]
    pending = repository.get_message(m2)
    assert pending is not None
    assert pending.status == QueueMessageStatus.PENDING
    assert pending.attempts == 0
    claim = repository.get_claim(UNIT)
    assert claim is not None
    assert claim.worker_id == "w2"


def test_budget_stop_re_requests_claim_for_pending_work(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    runtime.coordinator.try_claim(UNIT)
    _enqueue(repository, remote_repo, "c-1", "First")
    _enqueue(repository, remote_repo, "c-2", "Second")

    summary = runtime(unit=UNIT, budget=MessageBudget(1)).run()

    assert summary.processed == 1
    assert summary.stop_reason == UnitStopReason.DRAINED
    claim = repository.get_claim(UNIT)
    assert claim is not None
    assert claim.status == ClaimStatus.RELEASED
    requests = repository.list_messages(queue_name=UNCLAIMED_QUEUE)
    assert [request.body for request in requests] == [
        {
            "projectId": "proj-a",
            "userId": "user-1",
            "threadId": "t-1",
            "queueRef": UNIT.queue_name,
        },
    ]


def test_stop_request_releases_idle_unit(tmp_path: Path, repository: WorkerRepository) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    runtime.coordinator.try_claim(UNIT)
    consumer = runtime(unit=UNIT)
    thread = _start(consumer)

    consumer.stop()
    _join(thread)

    assert consumer.summary.stop_reason == UnitStopReason.STOPPED
    claim = repository.get_claim(UNIT)
    assert claim is not None
    assert claim.status == ClaimStatus.RELEASED


def test_work_queue_consumer_claims_and_drains(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    settings = _settings(tmp_path)
    runtime = _runtime(settings, repository)
    _enqueue(repository, remote_repo, "c-1", "Add a footer")
    consumer = WorkQueueConsumer(
        repository=repository,
        coordinator=runtime.coordinator,
        unit_factory=runtime,
        poll_interval_seconds=0.05,
    )

    summary = consumer.run_loop(max_idle_polls=1, stop_when_empty=True)

    assert summary.claim_requests == 1
    assert summary.claimed == 1
    assert summary.processed == 1
    assert summary.succeeded == 1
    assert summary.units == {UNIT.key: UnitStopReason.DRAINED}
    assert consumer.active_units == []
    assert repository.list_messages(
        queue_name=UNCLAIMED_QUEUE,
        status=QueueMessageStatus.PENDING,
    ) == []


def test_work_queue_consumer_acks_units_owned_elsewhere(
    tmp_path: Path,
    remote_repo: Path,
    repository: WorkerRepository,
) -> None:
    ClaimCoordinator(repository=repository, worker_id="w2").try_claim(UNIT)
    runtime = _runtime(_settings(tmp_path), repository)
    service = WorkQueueService(repository=repository)
    request_seq = service.enqueue_claim_request(unit=UNIT, thread_id="t-1")
    consumer = WorkQueueConsumer(
        repository=repository,
        coordinator=runtime.coordinator,
        unit_factory=runtime,
    )

    summary = consumer.run_once()

    assert summary.already_owned == 1
    assert consumer.active_units == []
    message = repository.get_message(request_seq)
    assert message is not None
    assert message.status == QueueMessageStatus.ACKED


def test_work_queue_consumer_dead_letters_malformed_claim_request(
    tmp_path: Path,
    repository: WorkerRepository,
) -> None:
    runtime = _runtime(_settings(tmp_path), repository)
    seq = repository.enqueue(queue_name=UNCLAIMED_QUEUE, body={"projectId": "proj-a"})
    consumer = WorkQueueConsumer(
        repository=repository,
        coordinator=runtime.coordinator,
        unit_factory=runtime,
    )

    summary = consumer.run_once()

    assert summary.claim_requests == 1
    assert summary.claimed == 0
    message = repository.get_message(seq)
    assert message is not None
    assert message.status == QueueMessageStatus.DEAD_LETTER
