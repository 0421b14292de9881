"""Run external operations under an explicit cancellation token."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class CancellationToken:
    """Cooperative cancellation flag shared between a pipeline and its steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class StepStatus(str, Enum):
    """Terminal outcome of an external step."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class StepResult:
    """Outcome plus whatever output the process produced."""

    status: StepStatus
    output: str
    exit_code: int | None = None
    timed_out: bool = False
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == StepStatus.CANCELLED


class InterruptibleStep:
    """Spawn one external process and race it against a cancellation token.

    On cancellation the process group gets ``terminate_signal`` first and is
    only force-killed after ``grace_seconds``. Output is captured to a spool
    file so partial output survives both cancellation and timeouts.
    """

    def __init__(
        self,
        *,
        grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
        terminate_signal: int = signal.SIGTERM,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.terminate_signal = terminate_signal

    def run(
        self,
        command: Sequence[str],
        cancel: CancellationToken,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> StepResult:
        if not command:
            return StepResult(status=StepStatus.FAILED, output="", error="Empty command.")
        if cancel.cancelled:
            return StepResult(status=StepStatus.CANCELLED, output="", error=cancel.reason)

        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as spool:
            try:
                process = subprocess.Popen(  # noqa: S603
                    list(command),
                    cwd=cwd,
                    env=dict(env) if env is not None else None,
                    stdin=subprocess.DEVNULL,
                    stdout=spool,
                    stderr=subprocess.STDOUT,
                    text=True,
                    start_new_session=os.name == "posix",
                )
            except FileNotFoundError:
                return StepResult(
                    status=StepStatus.FAILED,
                    output="",
                    error=f"Command not found: {command[0]}",
                )
            except OSError as error:
                return StepResult(
                    status=StepStatus.FAILED,
                    output="",
                    error=f"Command failed to start: {error}",
                )

            logger.debug("Started step pid=%s: %s", process.pid, command[0])
            outcome = self._wait(process, cancel=cancel, timeout_seconds=timeout_seconds)
            output = _read_spool(spool)

        if outcome == StepStatus.CANCELLED:
            logger.info("Step %s cancelled (exit_code=%s)", command[0], process.returncode)
            return StepResult(
                status=StepStatus.CANCELLED,
                output=output,
                exit_code=process.returncode,
                error=cancel.reason,
            )
        if outcome == StepStatus.FAILED:
            return StepResult(
                status=StepStatus.FAILED,
                output=output,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                error=f"Timed out after {timeout_seconds}s",
            )
        if process.returncode != 0:
            return StepResult(
                status=StepStatus.FAILED,
                output=output,
                exit_code=process.returncode,
                error=f"Exited with code {process.returncode}",
            )
        return StepResult(status=StepStatus.COMPLETED, output=output, exit_code=0)

    def _wait(
        self,
        process: subprocess.Popen[str],
        *,
        cancel: CancellationToken,
        timeout_seconds: float | None,
    ) -> StepStatus:
        start_monotonic = time.monotonic()
        while True:
            if process.poll() is not None:
                return StepStatus.COMPLETED
            if cancel.cancelled:
                self._shutdown(process)
                return StepStatus.CANCELLED
            if timeout_seconds is not None and time.monotonic() - start_monotonic >= timeout_seconds:
                self._shutdown(process)
                return StepStatus.FAILED
            cancel.wait(self.poll_interval_seconds)

    def _shutdown(self, process: subprocess.Popen[str]) -> None:
        _signal_process(process, self.terminate_signal)
        try:
            process.wait(timeout=max(0.0, self.grace_seconds))
            return
        except subprocess.TimeoutExpired:
            logger.warning("Step pid=%s ignored graceful stop; killing", process.pid)
        _signal_process(process, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("Step pid=%s did not exit after kill", process.pid)


def _signal_process(process: subprocess.Popen[str], signum: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(process.pid, signum)
        elif signum == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        return
    except OSError as error:
        logger.debug("Signal %s to pid=%s failed: %s", signum, process.pid, error)


def _read_spool(spool: IO[str]) -> str:
    spool.flush()
    spool.seek(0)
    return spool.read()
