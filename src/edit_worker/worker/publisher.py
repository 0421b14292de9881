"""Site build and mirror-sync publishing of build output."""

from __future__ import annotations

import filecmp
import logging
import shlex
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from edit_worker.worker.errors import DeployFailed
from edit_worker.worker.steps import CancellationToken, InterruptibleStep, StepResult, StepStatus

logger = logging.getLogger(__name__)


class PublishStatus(str, Enum):
    """Outcome of a publish attempt."""

    DEPLOYED = "deployed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PublishTarget:
    """Hosting location derived from the project identifier."""

    bucket: str
    url: str

    @classmethod
    def for_project(cls, project_id: str, *, domain: str) -> PublishTarget:
        bucket = f"edit.{project_id}.{domain}"
        return cls(bucket=bucket, url=f"https://{bucket}")


@dataclass(slots=True)
class PublishResult:
    status: PublishStatus
    url: str | None = None
    reason: str | None = None
    error: str | None = None

    @property
    def deployed(self) -> bool:
        return self.status == PublishStatus.DEPLOYED


@dataclass(slots=True)
class SyncStats:
    copied: int = 0
    deleted: int = 0


class MirrorTransport(Protocol):
    """Mirror a local directory onto a target, deleting stale entries."""

    def sync(self, source: Path, target: PublishTarget, cancel: CancellationToken) -> SyncStats:
        """Raise ``DeployFailed`` when the target could not be synchronised."""


class LocalMirrorTransport:
    """Mirror build output into ``root/<bucket>`` on the local filesystem."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def destination(self, target: PublishTarget) -> Path:
        return self.root / target.bucket

    def sync(self, source: Path, target: PublishTarget, cancel: CancellationToken) -> SyncStats:
        destination = self.destination(target)
        stats = SyncStats()
        try:
            destination.mkdir(parents=True, exist_ok=True)
            source_files = {
                path.relative_to(source) for path in source.rglob("*") if path.is_file()
            }
            for relative in sorted(source_files):
                if cancel.cancelled:
                    raise DeployFailed(f"Sync to {target.bucket} cancelled")
                src = source / relative
                dst = destination / relative
                if dst.is_file() and filecmp.cmp(src, dst, shallow=False):
                    continue
                if dst.is_dir():
                    shutil.rmtree(dst)
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
                stats.copied += 1

            deepest_first = sorted(
                destination.rglob("*"),
                key=lambda item: len(item.parts),
                reverse=True,
            )
            for path in deepest_first:
                relative = path.relative_to(destination)
                if path.is_dir() and not path.is_symlink():
                    if not any(path.iterdir()):
                        path.rmdir()
                elif relative not in source_files:
                    path.unlink()
                    stats.deleted += 1
        except OSError as error:
            raise DeployFailed(f"Sync to {destination} failed: {error}") from error
        return stats


class CommandMirrorTransport:
    """Mirror via an external sync command such as ``aws s3 sync --delete``."""

    def __init__(
        self,
        *,
        command_template: str,
        step: InterruptibleStep,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.step = step
        self.timeout_seconds = timeout_seconds
        self.env = env

    def sync(self, source: Path, target: PublishTarget, cancel: CancellationToken) -> SyncStats:
        try:
            rendered = self.command_template.format(
                source=shlex.quote(str(source)),
                bucket=shlex.quote(target.bucket),
            )
        except KeyError as error:
            raise DeployFailed(f"Unsupported publish command placeholder: {error}") from error
        result = self.step.run(
            shlex.split(rendered),
            cancel,
            cwd=source.parent,
            env=self.env,
            timeout_seconds=self.timeout_seconds,
        )
        if result.status != StepStatus.COMPLETED:
            raise DeployFailed(result.error or f"Sync to {target.bucket} did not complete")
        return SyncStats()


class ArtifactPublisher:
    """Publish a build output directory; never raises for expected failures."""

    def __init__(self, transport: MirrorTransport) -> None:
        self.transport = transport

    def publish(
        self,
        output_dir: Path,
        target: PublishTarget,
        cancel: CancellationToken,
    ) -> PublishResult:
        if not output_dir.is_dir():
            return PublishResult(status=PublishStatus.SKIPPED, reason="build output does not exist")
        if not any(path.is_file() for path in output_dir.rglob("*")):
            return PublishResult(status=PublishStatus.SKIPPED, reason="build output is empty")
        try:
            stats = self.transport.sync(output_dir, target, cancel)
        except DeployFailed as error:
            logger.warning("Deploy to %s failed: %s", target.bucket, error)
            return PublishResult(status=PublishStatus.FAILED, error=str(error))
        logger.info(
            "Deployed %s to %s (copied=%d deleted=%d)",
            output_dir,
            target.bucket,
            stats.copied,
            stats.deleted,
        )
        return PublishResult(status=PublishStatus.DEPLOYED, url=target.url)


class SiteBuilder:
    """Run the static-site build against a workspace."""

    def __init__(
        self,
        *,
        command: tuple[str, ...] = ("npm", "run", "build"),
        output_dir: str = "dist",
        step: InterruptibleStep,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = command
        self.output_dir = output_dir
        self.step = step
        self.timeout_seconds = timeout_seconds
        self.env = env

    def output_path(self, workspace_root: Path) -> Path:
        return workspace_root / self.output_dir

    def build(self, workspace_root: Path, cancel: CancellationToken) -> StepResult:
        result = self.step.run(
            self.command,
            cancel,
            cwd=workspace_root,
            env=self.env,
            timeout_seconds=self.timeout_seconds,
        )
        if result.status == StepStatus.FAILED:
            logger.warning("Build failed in %s: %s", workspace_root, result.error)
        return result
