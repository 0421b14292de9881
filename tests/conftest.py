"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from edit_worker.worker.executor import echo_executor
from edit_worker.worker.repository import WorkerRepository
from edit_worker.worker.workspace import VersionControlWorkspace

ECHO_EXECUTOR_SCRIPT = Path(echo_executor.__file__).resolve()

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Site Owner",
    "GIT_AUTHOR_EMAIL": "owner@example.com",
    "GIT_COMMITTER_NAME": "Site Owner",
    "GIT_COMMITTER_EMAIL": "owner@example.com",
    "GIT_TERMINAL_PROMPT": "0",
}


def git(cwd: Path, *args: str) -> str:
    """Run git outside the workspace abstraction, failing the test on error."""

    result = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=cwd,
        env={**os.environ, **_GIT_ENV},
        capture_output=True,
        text=True,
        check=False,
    )
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stdout}{result.stderr}"
    return result.stdout


def echo_template(*extra: str) -> str:
    """Executor command template running the echo executor with extra flags."""

    head = " ".join(shlex.quote(part) for part in (sys.executable, str(ECHO_EXECUTOR_SCRIPT)))
    tail = " ".join(shlex.quote(part) for part in extra)
    return (
        f"{head} --instruction {{instruction}} --workspace {{workspace}} "
        f"--history-file {{history_file}} {tail}"
    ).strip()


def build_command(
    *,
    delay: float = 0.0,
    write_first: bool = True,
    fail: bool = False,
) -> tuple[str, ...]:
    """A site build that writes ``dist/index.html`` and optionally sleeps or fails."""

    lines = ["import pathlib, sys, time", "out = pathlib.Path('dist')"]
    write = [
        "out.mkdir(exist_ok=True)",
        "(out / 'index.html').write_text(pathlib.Path('file.txt').read_text() "
        "if pathlib.Path('file.txt').exists() else 'empty')",
    ]
    if write_first:
        lines.extend(write)
    lines.append(f"time.sleep({delay})")
    if not write_first:
        lines.extend(write)
    if fail:
        lines.append("sys.exit(3)")
    return (sys.executable, "-c", "\n".join(lines))


def commit_file(repo: Path, path: str, content: str, message: str) -> None:
    target = repo / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", message)


@pytest.fixture()
def remote_repo(tmp_path: Path) -> Path:
    """Bare remote whose ``main`` holds a small site ignoring ``dist/``."""

    bare = tmp_path / "remote" / "site.git"
    bare.parent.mkdir(parents=True)
    git(bare.parent, "init", "--bare", str(bare))
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    (seed / ".gitignore").write_text("dist/\n", "utf-8")
    commit_file(seed, "index.html", "<h1>Home</h1>\n", "Seed site")
    git(seed, "remote", "add", "origin", str(bare))
    git(seed, "push", "origin", "main")
    return bare


@pytest.fixture()
def other_clone(tmp_path: Path, remote_repo: Path) -> Path:
    """A second checkout used to move the remote ahead of the workspace."""

    clone = tmp_path / "other"
    git(tmp_path, "clone", str(remote_repo), str(clone))
    return clone


@pytest.fixture()
def workspace(tmp_path: Path, remote_repo: Path) -> VersionControlWorkspace:
    ws = VersionControlWorkspace(root=tmp_path / "workspaces" / "proj-a" / "user-1" / "site")
    ws.prepare(str(remote_repo))
    return ws


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[WorkerRepository]:
    repo = WorkerRepository(tmp_path / "worker.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
