"""Per-unit message processing state machine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from edit_worker.storage.common import utc_now
from edit_worker.worker.commit_message import (
    build_commit_message,
    interrupted_commit_message,
    thread_switch_commit_message,
)
from edit_worker.worker.contracts import WorkMessage
from edit_worker.worker.errors import (
    GitCommandError,
    PushRejectedProtectedBranch,
    WorkspaceCorrupt,
)
from edit_worker.worker.executor.base import ExecutionResult, InstructionExecutor
from edit_worker.worker.models import (
    InFlightOperation,
    OperationKind,
    PipelineRun,
    PipelineStage,
    ProcessorState,
    ThreadContext,
    ThreadHistoryEntry,
    WorkUnit,
)
from edit_worker.worker.publisher import ArtifactPublisher, PublishTarget, SiteBuilder
from edit_worker.worker.repository import WorkerRepository
from edit_worker.worker.steps import CancellationToken
from edit_worker.worker.workspace import PushOutcome, VersionControlWorkspace

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERRUPTED_SUMMARY = "Interrupted by a newer instruction"
_STAGE_STATES = {
    PipelineStage.EDITING: ProcessorState.EDITING,
    PipelineStage.COMMITTING: ProcessorState.COMMITTING,
    PipelineStage.BUILDING: ProcessorState.BUILDING,
    PipelineStage.DEPLOYING: ProcessorState.DEPLOYING,
    PipelineStage.PUSHING: ProcessorState.PUSHING,
}


@dataclass(slots=True)
class ProcessorConfig:
    """Per-claim settings resolved once when the unit is claimed."""

    unit: WorkUnit
    workspace_path: Path
    preview_domain: str = "webordinary.com"
    push_enabled: bool = True


class PipelineHandle:
    """A pipeline running on its own thread for one message."""

    def __init__(self, *, message: WorkMessage, cancel: CancellationToken) -> None:
        self.message = message
        self.cancel = cancel
        self._done = threading.Event()
        self._run: PipelineRun | None = None
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    def launch(self, target: Callable[[], PipelineRun]) -> None:
        def _runner() -> None:
            try:
                self._run = target()
            except BaseException as error:  # noqa: BLE001
                self._error = error
            finally:
                self._done.set()

        self._thread = threading.Thread(
            target=_runner,
            daemon=True,
            name=f"pipeline-{self.message.command_id}",
        )
        self._thread.start()

    def interrupt(self, reason: str = "superseded by newer message") -> None:
        self.cancel.cancel(reason)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def result(self) -> PipelineRun:
        """Return the finished run, re-raising a fatal pipeline error."""

        if not self._done.is_set():
            raise RuntimeError(f"Pipeline for {self.message.command_id} is still running")
        if self._error is not None:
            raise self._error
        if self._run is None:
            raise RuntimeError(f"Pipeline for {self.message.command_id} produced no result")
        return self._run


class MessageProcessor:
    """Drive edit, commit, build, deploy, and push for one claimed unit.

    At most one pipeline runs at a time. A newer message interrupts the
    running one; the interrupted run still commits whatever the workspace
    holds, publishes partial build output when the build was cut short,
    and pushes before it reports ``interrupted``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: ProcessorConfig,
        repository: WorkerRepository,
        workspace: VersionControlWorkspace,
        executor: InstructionExecutor,
        builder: SiteBuilder,
        publisher: ArtifactPublisher,
    ) -> None:
        self.config = config
        self.repository = repository
        self.workspace = workspace
        self.executor = executor
        self.builder = builder
        self.publisher = publisher
        self.target = PublishTarget.for_project(
            config.unit.project_id,
            domain=config.preview_domain,
        )
        self.state = ProcessorState.IDLE
        self.current_thread_id: str | None = None
        self._lock = threading.Lock()
        self._in_flight: InFlightOperation | None = None
        self._active: PipelineHandle | None = None

    @property
    def in_flight(self) -> InFlightOperation | None:
        with self._lock:
            return self._in_flight

    @property
    def active(self) -> PipelineHandle | None:
        return self._active

    def submit(self, message: WorkMessage) -> PipelineHandle:
        """Start ``message``, interrupting and draining any running pipeline first."""

        previous = self._active
        if previous is not None and not previous.done:
            self._set_state(ProcessorState.INTERRUPTING)
            previous.interrupt()
            previous.wait()

        handle = PipelineHandle(message=message, cancel=CancellationToken())
        self._active = handle
        handle.launch(lambda: self.process(message, handle.cancel))
        return handle

    def process(self, message: WorkMessage, cancel: CancellationToken) -> PipelineRun:
        """Run the pipeline synchronously; raises only for ``WorkspaceCorrupt`` after retry."""

        run = PipelineRun(
            command_id=message.command_id,
            session_id=message.session_id,
            thread_id=message.thread_id,
        )
        logger.info(
            "Processing %s for %s on thread %s",
            message.command_id,
            self.config.unit,
            message.thread_id,
        )
        try:
            self._prepare_workspace(message)
            context = self._switch_context(message.thread_id)
            if cancel.cancelled:
                return self._finish_interrupted(run, context, message, kind=None)

            self._enter(run, PipelineStage.EDITING)
            with self._track(OperationKind.EDIT, cancel):
                execution = self.executor.execute(
                    message.instruction,
                    self.workspace.root,
                    list(context.history),
                    cancel,
                )
            if execution.cancelled or cancel.cancelled:
                return self._finish_interrupted(run, context, message, kind=OperationKind.EDIT)
            if not execution.success:
                return self._finish_failed_edit(run, context, message, execution)

            run.files_changed = self._resolve_changed_files(execution)
            run.summary = execution.summary or _default_summary(run.files_changed)
            if run.files_changed:
                self._commit_stage(run, context, message)
                if cancel.cancelled:
                    return self._finish_interrupted(run, context, message, kind=None)
                self._build_and_deploy(run, cancel)
                if cancel.cancelled:
                    return self._finish_interrupted(
                        run,
                        context,
                        message,
                        kind=run.interrupted_during,
                    )

            self._push_stage(run, context)
            run.stage = PipelineStage.DONE
            self._record_history(context, message, run)
            return run
        finally:
            self._set_state(ProcessorState.IDLE)
            logger.info(
                "Finished %s stage=%s files=%d build=%s deploy=%s push=%s",
                run.command_id,
                run.stage.value,
                len(run.files_changed),
                run.build_success,
                run.deploy_success,
                run.push_success,
            )

    # Stages

    def _prepare_workspace(self, message: WorkMessage) -> None:
        unit = self.config.unit
        if message.repo_url:
            self.repository.remember_repo_url(unit=unit, repo_url=message.repo_url)
        repo_url = message.repo_url or self.repository.get_repo_url(unit)
        self._with_recovery(lambda: self.workspace.prepare(repo_url))
        self._with_recovery(self.workspace.recover)

    def _switch_context(self, thread_id: str) -> ThreadContext:
        unit = self.config.unit
        branch = self.workspace.branch_for_thread(thread_id)
        current = self._with_recovery(self.workspace.current_branch)
        if current != branch:
            self._set_state(ProcessorState.SWITCHING_CONTEXT)
            previous_thread = self.current_thread_id or self._thread_for_branch(current)
            if current is not None and self._with_recovery(self.workspace.is_dirty):
                ref = self._with_recovery(
                    lambda: self.workspace.commit(
                        thread_switch_commit_message(thread_id=previous_thread or current),
                    ),
                )
                if ref is not None and previous_thread is not None:
                    self._update_last_commit(previous_thread, ref)
            restored = self._with_recovery(lambda: self.workspace.safe_switch(branch))
            if not restored:
                logger.warning("Stashed changes for %s kept after switch", branch)
        self.current_thread_id = thread_id

        context = self.repository.load_thread_context(unit=unit, thread_id=thread_id)
        if context is None:
            context = ThreadContext(thread_id=thread_id, branch=branch)
            self.repository.save_thread_context(unit=unit, context=context)
        return context

    def _commit_stage(
        self,
        run: PipelineRun,
        context: ThreadContext,
        message: WorkMessage,
    ) -> None:
        self._enter(run, PipelineStage.COMMITTING)
        commit_message = build_commit_message(
            instruction=message.instruction,
            files_changed=run.files_changed,
            thread_id=message.thread_id,
            user_id=self.config.unit.user_id,
            timestamp=utc_now(),
        )
        ref = self._with_recovery(lambda: self.workspace.commit(commit_message))
        if ref is not None:
            run.commit_ref = ref
            context.last_commit = ref
            self.repository.save_thread_context(unit=self.config.unit, context=context)

    def _build_and_deploy(self, run: PipelineRun, cancel: CancellationToken) -> None:
        self._enter(run, PipelineStage.BUILDING)
        with self._track(OperationKind.BUILD, cancel):
            build = self.builder.build(self.workspace.root, cancel)
        if build.cancelled or cancel.cancelled:
            run.interrupted_during = OperationKind.BUILD
            return
        run.build_success = build.completed
        if not run.build_success:
            run.error = f"BuildFailed: {build.error or 'build did not complete'}"
            return

        self._enter(run, PipelineStage.DEPLOYING)
        with self._track(OperationKind.DEPLOY, cancel):
            published = self.publisher.publish(
                self.builder.output_path(self.workspace.root),
                self.target,
                CancellationToken(),
            )
        run.deploy_success = published.deployed
        if published.deployed:
            run.preview_url = published.url
        elif published.error:
            run.error = f"DeployFailed: {published.error}"

    def _push_stage(self, run: PipelineRun, context: ThreadContext) -> None:
        if not self.config.push_enabled:
            return
        branch = context.branch
        try:
            ahead = self._with_recovery(lambda: self.workspace.commits_ahead(branch))
        except WorkspaceCorrupt as error:
            run.error = run.error or f"PushFailed: {error}"
            return
        if ahead <= 0:
            return

        self._enter(run, PipelineStage.PUSHING)
        try:
            outcome = self.workspace.push(branch)
        except PushRejectedProtectedBranch as error:
            logger.error("Configuration error: %s", error)
            run.error = f"PushRejectedProtectedBranch: {error}"
            return
        except GitCommandError as error:
            logger.warning("Push of %s failed: %s", branch, error)
            run.error = run.error or f"PushFailed: {error}"
            return

        run.push_success = outcome == PushOutcome.PUSHED
        if outcome == PushOutcome.CONFLICT:
            run.error = run.error or f"PushConflict: {branch} diverged and could not be merged"
        elif outcome == PushOutcome.REJECTED:
            run.error = run.error or f"PushFailed: remote rejected {branch}"

    # Terminal paths

    def _finish_interrupted(
        self,
        run: PipelineRun,
        context: ThreadContext,
        message: WorkMessage,
        *,
        kind: OperationKind | None,
    ) -> PipelineRun:
        self._set_state(ProcessorState.INTERRUPTING)
        run.interrupted_during = kind
        pending = self._with_recovery(self.workspace.changed_files)
        if pending:
            ref = self._with_recovery(
                lambda: self.workspace.commit(
                    interrupted_commit_message(
                        files_count=len(pending),
                        thread_id=message.thread_id,
                    ),
                ),
            )
            if ref is not None:
                run.commit_ref = ref
                context.last_commit = ref
            run.files_changed = sorted({*run.files_changed, *pending})

        if kind == OperationKind.BUILD:
            partial = self.publisher.publish(
                self.builder.output_path(self.workspace.root),
                self.target,
                CancellationToken(),
            )
            run.deploy_success = partial.deployed
            if partial.deployed:
                run.preview_url = partial.url

        self._push_stage(run, context)
        run.stage = PipelineStage.INTERRUPTED
        run.summary = INTERRUPTED_SUMMARY
        self._record_history(context, message, run)
        logger.info("Interrupted %s during %s", run.command_id, kind.value if kind else "-")
        return run

    def _finish_failed_edit(
        self,
        run: PipelineRun,
        context: ThreadContext,
        message: WorkMessage,
        execution: ExecutionResult,
    ) -> PipelineRun:
        detail = execution.error or "instruction executor reported failure"
        run.error = f"EditExecutionFailed: {detail}"
        run.retryable = execution.transient
        run.files_changed = self._with_recovery(self.workspace.changed_files)
        if run.files_changed:
            self._commit_stage(run, context, message)
            self._push_stage(run, context)
        run.stage = PipelineStage.FAILED
        run.summary = execution.summary or f"Instruction failed: {detail}"
        self._record_history(context, message, run)
        return run

    # Helpers

    def _resolve_changed_files(self, execution: ExecutionResult) -> list[str]:
        if execution.files_changed is not None:
            return sorted(dict.fromkeys(execution.files_changed))
        return self.workspace.changed_files()

    def _record_history(
        self,
        context: ThreadContext,
        message: WorkMessage,
        run: PipelineRun,
    ) -> None:
        context.history.append(
            ThreadHistoryEntry(
                command_id=message.command_id,
                instruction=message.instruction,
                summary=run.summary,
                interrupted=run.interrupted,
                commit_ref=run.commit_ref,
                timestamp=utc_now().isoformat(),
            ),
        )
        self.repository.save_thread_context(unit=self.config.unit, context=context)

    def _thread_for_branch(self, branch: str | None) -> str | None:
        if branch is None:
            return None
        known = self.repository.thread_id_for_branch(unit=self.config.unit, branch=branch)
        return known or _thread_from_branch(branch)

    def _update_last_commit(self, thread_id: str, ref: str) -> None:
        unit = self.config.unit
        previous = self.repository.load_thread_context(unit=unit, thread_id=thread_id)
        if previous is None:
            return
        previous.last_commit = ref
        self.repository.save_thread_context(unit=unit, context=previous)

    def _with_recovery(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except WorkspaceCorrupt as error:
            logger.warning("Workspace operation failed, recovering once: %s", error)
            self.workspace.recover()
            return operation()

    @contextmanager
    def _track(self, kind: OperationKind, cancel: CancellationToken) -> Iterator[None]:
        with self._lock:
            self._in_flight = InFlightOperation(kind=kind, cancel=cancel, started_at=utc_now())
        try:
            yield
        finally:
            with self._lock:
                self._in_flight = None

    def _enter(self, run: PipelineRun, stage: PipelineStage) -> None:
        run.stage = stage
        self._set_state(_STAGE_STATES[stage])

    def _set_state(self, state: ProcessorState) -> None:
        if self.state != state:
            logger.debug("Processor %s: %s -> %s", self.config.unit, self.state.value, state.value)
        self.state = state


def _thread_from_branch(branch: str | None) -> str | None:
    if branch is None or not branch.startswith("thread-"):
        return None
    return branch[len("thread-") :]


def _default_summary(files_changed: list[str]) -> str:
    if not files_changed:
        return "No changes were needed"
    return f"Updated {len(files_changed)} file(s)"
