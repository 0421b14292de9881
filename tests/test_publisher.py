from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
from conftest import build_command

from edit_worker.worker.publisher import (
    ArtifactPublisher,
    CommandMirrorTransport,
    LocalMirrorTransport,
    PublishStatus,
    PublishTarget,
    SiteBuilder,
)
from edit_worker.worker.steps import CancellationToken, InterruptibleStep, StepStatus

pytestmark = [
    allure.epic("Edit Worker"),
    allure.feature("Publisher"),
]

TARGET = PublishTarget.for_project("amelia", domain="webordinary.com")


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, "utf-8")


def test_target_is_derived_from_project() -> None:
    assert TARGET.bucket == "edit.amelia.webordinary.com"
    assert TARGET.url == "https://edit.amelia.webordinary.com"


def test_local_mirror_copies_and_deletes_stale_files(tmp_path: Path) -> None:
    output = tmp_path / "dist"
    _write(output / "index.html", "new home")
    _write(output / "blog" / "post.html", "post")
    transport = LocalMirrorTransport(tmp_path / "sites")
    destination = transport.destination(TARGET)
    _write(destination / "index.html", "old home")
    _write(destination / "old" / "gone.html", "stale")

    result = ArtifactPublisher(transport).publish(output, TARGET, CancellationToken())

    assert result.status == PublishStatus.DEPLOYED
    assert result.url == TARGET.url
    assert (destination / "index.html").read_text("utf-8") == "new home"
    assert (destination / "blog" / "post.html").read_text("utf-8") == "post"
    assert not (destination / "old").exists()


def test_unchanged_files_are_not_copied_again(tmp_path: Path) -> None:
    output = tmp_path / "dist"
    _write(output / "index.html", "same")
    transport = LocalMirrorTransport(tmp_path / "sites")

    first = transport.sync(output, TARGET, CancellationToken())
    second = transport.sync(output, TARGET, CancellationToken())

    assert first.copied == 1
    assert second.copied == 0
    assert second.deleted == 0


def test_missing_or_empty_output_is_skipped(tmp_path: Path) -> None:
    publisher = ArtifactPublisher(LocalMirrorTransport(tmp_path / "sites"))

    missing = publisher.publish(tmp_path / "dist", TARGET, CancellationToken())
    (tmp_path / "dist" / "assets").mkdir(parents=True)
    empty = publisher.publish(tmp_path / "dist", TARGET, CancellationToken())

    assert missing.status == PublishStatus.SKIPPED
    assert missing.reason == "build output does not exist"
    assert empty.status == PublishStatus.SKIPPED
    assert empty.reason == "build output is empty"
    assert not (tmp_path / "sites").exists()


def test_failing_sync_command_is_reported(tmp_path: Path) -> None:
    _write(tmp_path / "dist" / "index.html", "home")
    failing = " ".join(
        shlex.quote(part) for part in (sys.executable, "-c", "import sys; sys.exit(1)")
    )
    transport = CommandMirrorTransport(
        command_template=f"{failing} {{source}} {{bucket}}",
        step=InterruptibleStep(grace_seconds=1),
    )

    result = ArtifactPublisher(transport).publish(tmp_path / "dist", TARGET, CancellationToken())

    assert result.status == PublishStatus.FAILED
    assert result.deployed is False
    assert result.error == "Exited with code 1"


def test_sync_command_receives_source_and_bucket(tmp_path: Path) -> None:
    _write(tmp_path / "dist" / "index.html", "home")
    record = tmp_path / "args.txt"
    script = (
        "import sys, pathlib; "
        f"pathlib.Path({str(record)!r}).write_text(' '.join(sys.argv[1:]))"
    )
    command = " ".join(shlex.quote(part) for part in (sys.executable, "-c", script))
    transport = CommandMirrorTransport(
        command_template=f"{command} {{source}} s3://{{bucket}}",
        step=InterruptibleStep(grace_seconds=1),
    )

    result = ArtifactPublisher(transport).publish(tmp_path / "dist", TARGET, CancellationToken())

    assert result.deployed
    assert record.read_text("utf-8") == f"{tmp_path / 'dist'} s3://{TARGET.bucket}"


def test_site_builder_runs_in_workspace(tmp_path: Path) -> None:
    _write(tmp_path / "file.txt", "hello")
    builder = SiteBuilder(command=build_command(), step=InterruptibleStep(grace_seconds=1))

    result = builder.build(tmp_path, CancellationToken())

    assert result.status == StepStatus.COMPLETED
    assert builder.output_path(tmp_path) == tmp_path / "dist"
    assert (tmp_path / "dist" / "index.html").read_text("utf-8") == "hello"


def test_site_builder_failure(tmp_path: Path) -> None:
    builder = SiteBuilder(
        command=build_command(fail=True),
        step=InterruptibleStep(grace_seconds=1),
    )

    result = builder.build(tmp_path, CancellationToken())

    assert result.status == StepStatus.FAILED
    assert result.exit_code == 3
    assert (tmp_path / "dist" / "index.html").read_text("utf-8") == "empty"
