"""Git-backed workspace that maps conversation threads to branches."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import subprocess
from enum import Enum
from pathlib import Path

from edit_worker.storage.common import utc_now
from edit_worker.worker.errors import (
    GitCommandError,
    PushRejectedProtectedBranch,
    WorkspaceCorrupt,
)
from edit_worker.worker.models import WorkspaceState

logger = logging.getLogger(__name__)

STASH_LABEL_PREFIX = "edit-worker-stash:"
DEFAULT_PROTECTED_BRANCHES = ("main", "master", "production")
AUTO_RESOLVED_MESSAGE = {
    "ours": "Auto-resolved conflicts (kept local changes)",
    "theirs": "Auto-resolved conflicts (kept remote changes)",
}

_BRANCH_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first")


class ConflictStrategy(str, Enum):
    """Which side wins when a push-time merge conflicts."""

    OURS = "ours"
    THEIRS = "theirs"


class PushOutcome(str, Enum):
    """Result of ``VersionControlWorkspace.push``."""

    PUSHED = "pushed"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class VersionControlWorkspace:
    """One checked-out repository for a claimed unit."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        root: Path,
        default_branch: str = "main",
        protected_branches: tuple[str, ...] = DEFAULT_PROTECTED_BRANCHES,
        remote: str = "origin",
        conflict_strategy: ConflictStrategy = ConflictStrategy.OURS,
        author_name: str = "Edit Worker",
        author_email: str = "edit-worker@localhost",
        git_timeout_seconds: float = 120.0,
    ) -> None:
        self.root = root
        self.default_branch = default_branch
        self.protected_branches = frozenset((*protected_branches, default_branch))
        self.remote = remote
        self.conflict_strategy = ConflictStrategy(conflict_strategy)
        self.author_name = author_name
        self.author_email = author_email
        self.git_timeout_seconds = git_timeout_seconds

    @staticmethod
    def branch_for_thread(thread_id: str) -> str:
        """Deterministic branch name for a thread identifier.

        Ids that need cleaning up get a digest of the raw id appended, so two
        ids that clean to the same text still map to different branches.
        """

        cleaned = _BRANCH_UNSAFE.sub("-", thread_id.strip()).strip("-.")
        while ".." in cleaned:
            cleaned = cleaned.replace("..", ".")
        if cleaned.endswith(".lock"):
            cleaned = cleaned[: -len(".lock")]
        if not cleaned:
            raise ValueError(f"Thread id {thread_id!r} does not yield a branch name")
        if cleaned != thread_id:
            raw = thread_id.encode("utf-8")
            digest = hashlib.sha1(raw, usedforsecurity=False).hexdigest()[:8]  # noqa: S324
            cleaned = f"{cleaned}-{digest}"
        return f"thread-{cleaned}"

    # Lifecycle

    def exists(self) -> bool:
        return (self.root / ".git").exists()

    def prepare(self, repo_url: str | None) -> bool:
        """Clone or initialise the checkout; True when it was created now."""

        if self.exists():
            if repo_url and not self.has_remote():
                self._git("remote", "add", self.remote, repo_url)
            self._configure_identity()
            return False

        self.root.parent.mkdir(parents=True, exist_ok=True)
        cloned = False
        if repo_url:
            ok, output = self._try_git_at(
                self.root.parent,
                "clone",
                "--origin",
                self.remote,
                repo_url,
                str(self.root),
            )
            cloned = ok
            if not ok:
                logger.warning("Clone of %s failed, initialising locally: %s", repo_url, output)

        if not cloned:
            self.root.mkdir(parents=True, exist_ok=True)
            self._git("init")
            if repo_url:
                self._git("remote", "add", self.remote, repo_url)

        self._configure_identity()
        if not self._has_commits():
            self._git("symbolic-ref", "HEAD", f"refs/heads/{self.default_branch}")
            self._git("commit", "--allow-empty", "-m", "Initial commit")
        logger.info("Prepared workspace %s (cloned=%s)", self.root, cloned)
        return True

    def state(self) -> WorkspaceState:
        return WorkspaceState(
            root=str(self.root),
            branch=self.current_branch(),
            dirty=self.is_dirty(),
            pending_stashes=[ref for ref, _ in self._labelled_stashes()],
        )

    # Queries

    def current_branch(self) -> str | None:
        ok, output = self._try_git("symbolic-ref", "--quiet", "--short", "HEAD")
        return output.strip() if ok and output.strip() else None

    def is_dirty(self) -> bool:
        return bool(self._git("status", "--porcelain", "--untracked-files=all").strip())

    def changed_files(self) -> list[str]:
        """Paths with staged, unstaged, or untracked changes."""

        raw = self._git("status", "--porcelain", "-z", "--untracked-files=all")
        files: list[str] = []
        entries = iter(raw.split("\0"))
        for entry in entries:
            if len(entry) < 4:
                continue
            status, path = entry[:2], entry[3:]
            if status[0] in {"R", "C"}:
                next(entries, None)
            files.append(path)
        return sorted(dict.fromkeys(files))

    def has_remote(self) -> bool:
        ok, output = self._try_git("remote")
        return ok and self.remote in output.split()

    def branch_exists(self, branch: str) -> bool:
        ok, _ = self._try_git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return ok

    def head_ref(self) -> str | None:
        ok, output = self._try_git("rev-parse", "HEAD")
        return output.strip() if ok else None

    def commits_ahead(self, branch: str) -> int:
        """Local commits on ``branch`` not yet on any remote-tracking ref."""

        if not self.has_remote() or not self.branch_exists(branch):
            return 0
        output = self._git(
            "rev-list",
            "--count",
            f"refs/heads/{branch}",
            "--not",
            f"--remotes={self.remote}",
        )
        return int(output.strip() or "0")

    # Branching

    def ensure_branch(self, thread_id: str) -> str:
        """Check out (creating if needed) the branch for ``thread_id``."""

        branch = self.branch_for_thread(thread_id)
        if self.current_branch() != branch:
            self.safe_switch(branch)
        return branch

    def safe_switch(self, branch: str) -> bool:
        """Switch branches without losing uncommitted work.

        Dirty state is stashed under a label naming the branch it came from.
        After the checkout, a stash left behind by an earlier switch away from
        ``branch`` is re-applied and dropped. Returns False when a stash could
        not be re-applied; it is then kept in the stash list.
        """

        source = self.current_branch()
        if source == branch:
            return True

        stashed = False
        if self.is_dirty():
            label = f"{STASH_LABEL_PREFIX}{source or 'detached'}:{utc_now().isoformat()}"
            self._git("stash", "push", "--include-untracked", "-m", label)
            stashed = True
            logger.info("Stashed dirty state of %s as %r", source, label)

        try:
            self._checkout(branch)
        except GitCommandError:
            if stashed and source is not None:
                self._restore_stash_for(source)
            raise

        return self._restore_stash_for(branch)

    def _checkout(self, branch: str) -> None:
        if self.branch_exists(branch):
            self._git("checkout", branch)
            return

        remote_ref = f"refs/remotes/{self.remote}/{branch}"
        if self.has_remote():
            fetched, _ = self._try_git(
                "fetch",
                self.remote,
                f"+refs/heads/{branch}:{remote_ref}",
            )
            if fetched:
                self._git("checkout", "-b", branch, "--track", f"{self.remote}/{branch}")
                logger.info("Checked out %s from %s", branch, self.remote)
                return

        self._git("checkout", "--no-track", "-b", branch, self._branch_base())
        logger.info("Created branch %s", branch)

    def _branch_base(self) -> str:
        if self.has_remote():
            self._try_git(
                "fetch",
                self.remote,
                f"+refs/heads/{self.default_branch}:refs/remotes/{self.remote}/{self.default_branch}",
            )
            remote_default = f"refs/remotes/{self.remote}/{self.default_branch}"
            ok, _ = self._try_git("rev-parse", "--verify", "--quiet", remote_default)
            if ok:
                return remote_default
        if self.branch_exists(self.default_branch):
            return f"refs/heads/{self.default_branch}"
        return "HEAD"

    def _labelled_stashes(self) -> list[tuple[str, str]]:
        ok, output = self._try_git("stash", "list", "--format=%gd%x09%gs")
        if not ok:
            return []
        stashes: list[tuple[str, str]] = []
        for line in output.splitlines():
            ref, _, subject = line.partition("\t")
            if STASH_LABEL_PREFIX in subject:
                stashes.append((ref, subject))
        return stashes

    def _restore_stash_for(self, branch: str) -> bool:
        marker = f"{STASH_LABEL_PREFIX}{branch}:"
        for ref, subject in self._labelled_stashes():
            if marker not in subject:
                continue
            ok, output = self._try_git("stash", "apply", ref)
            if not ok:
                logger.warning(
                    "Could not re-apply %s on %s, keeping it: %s",
                    ref,
                    branch,
                    output,
                )
                self._git("reset", "--hard", "HEAD")
                self._git("clean", "-fd")
                return False
            self._git("stash", "drop", ref)
            logger.info("Re-applied stashed changes for %s", branch)
            return True
        return True

    # Commit and push

    def commit(self, message: str) -> str | None:
        """Stage everything and commit; None when there is nothing to commit."""

        if not self.is_dirty():
            return None
        self._git("add", "-A")
        staged, _ = self._try_git("diff", "--cached", "--quiet")
        if staged:
            return None
        self._git("commit", "--no-verify", "-F", "-", input_text=message)
        ref = self.head_ref()
        logger.info("Committed %s on %s", ref, self.current_branch())
        return ref

    def push(self, branch: str) -> PushOutcome:
        """Push ``branch``, merging the remote once if it moved ahead."""

        if branch in self.protected_branches:
            raise PushRejectedProtectedBranch(branch)

        ok, output = self._push_once(branch)
        if ok:
            return PushOutcome.PUSHED
        if not _is_remote_ahead(output):
            logger.warning("Push of %s rejected: %s", branch, output)
            return PushOutcome.REJECTED

        logger.info("Remote %s is ahead; merging before retry", branch)
        if not self._merge_remote(branch):
            return PushOutcome.CONFLICT

        ok, output = self._push_once(branch)
        if ok:
            return PushOutcome.PUSHED
        logger.warning("Push of %s still rejected after merge: %s", branch, output)
        return PushOutcome.CONFLICT if _is_remote_ahead(output) else PushOutcome.REJECTED

    def _push_once(self, branch: str) -> tuple[bool, str]:
        return self._try_git(
            "push",
            "--porcelain",
            "-u",
            self.remote,
            f"refs/heads/{branch}:refs/heads/{branch}",
        )

    def _merge_remote(self, branch: str) -> bool:
        remote_ref = f"refs/remotes/{self.remote}/{branch}"
        fetched, output = self._try_git("fetch", self.remote, f"+refs/heads/{branch}:{remote_ref}")
        if not fetched:
            logger.warning("Fetch of %s failed: %s", branch, output)
            return False

        strategy = self.conflict_strategy.value
        merged, output = self._try_git("merge", "--no-edit", "-X", strategy, remote_ref)
        if merged:
            return True

        unmerged = self._unmerged_paths()
        if not unmerged:
            logger.warning("Merge of %s failed without conflicts: %s", remote_ref, output)
            self._try_git("merge", "--abort")
            return False

        for path in unmerged:
            resolved, _ = self._try_git("checkout", f"--{strategy}", "--", path)
            if resolved:
                self._git("add", "--", path)
            else:
                self._git("rm", "--cached", "--ignore-unmatch", "--quiet", "--", path)
        committed, output = self._try_git(
            "commit",
            "--no-verify",
            "-m",
            AUTO_RESOLVED_MESSAGE[strategy],
        )
        if not committed:
            logger.warning("Could not conclude merge of %s: %s", remote_ref, output)
            self._try_git("merge", "--abort")
            return False
        logger.info("Auto-resolved %d conflicting path(s) on %s", len(unmerged), branch)
        return True

    def _unmerged_paths(self) -> list[str]:
        ok, output = self._try_git("diff", "--name-only", "--diff-filter=U")
        if not ok:
            return []
        return [line for line in output.splitlines() if line.strip()]

    # Recovery

    def recover(self) -> bool:
        """Abort half-finished merges and reset to HEAD; True if anything was fixed."""

        if not self.exists():
            raise WorkspaceCorrupt(f"No git repository at {self.root}")
        git_dir = self._git_dir()

        needs_reset = False
        lock = git_dir / "index.lock"
        if lock.exists():
            logger.warning("Removing stale %s", lock)
            lock.unlink()
            needs_reset = True
        for marker, abort_args in (
            ("MERGE_HEAD", ("merge", "--abort")),
            ("CHERRY_PICK_HEAD", ("cherry-pick", "--abort")),
            ("REVERT_HEAD", ("revert", "--abort")),
        ):
            if (git_dir / marker).exists():
                self._try_git(*abort_args)
                needs_reset = True
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            self._try_git("rebase", "--abort")
            needs_reset = True
        if self._unmerged_paths():
            needs_reset = True

        if needs_reset:
            self._git("reset", "--hard", "HEAD")
            logger.warning("Recovered workspace %s to %s", self.root, self.head_ref())
        return needs_reset

    def _git_dir(self) -> Path:
        git_dir = Path(self._git("rev-parse", "--git-dir").strip())
        return git_dir if git_dir.is_absolute() else self.root / git_dir

    # Plumbing

    def _configure_identity(self) -> None:
        self._git("config", "user.name", self.author_name)
        self._git("config", "user.email", self.author_email)

    def _has_commits(self) -> bool:
        ok, _ = self._try_git("rev-parse", "--verify", "--quiet", "HEAD")
        return ok

    def _git(self, *args: str, input_text: str | None = None) -> str:
        ok, output, exit_code = self._run(self.root, args, input_text=input_text)
        if not ok:
            raise GitCommandError(args, exit_code=exit_code, output=output)
        return output

    def _try_git(self, *args: str) -> tuple[bool, str]:
        ok, output, _ = self._run(self.root, args)
        return ok, output

    def _try_git_at(self, cwd: Path, *args: str) -> tuple[bool, str]:
        ok, output, _ = self._run(cwd, args)
        return ok, output

    def _run(
        self,
        cwd: Path,
        args: tuple[str, ...],
        *,
        input_text: str | None = None,
    ) -> tuple[bool, str, int]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_AUTHOR_NAME"] = self.author_name
        env["GIT_AUTHOR_EMAIL"] = self.author_email
        env["GIT_COMMITTER_NAME"] = self.author_name
        env["GIT_COMMITTER_EMAIL"] = self.author_email
        try:
            result = subprocess.run(  # noqa: S603
                ["git", "--no-pager", *args],  # noqa: S607
                cwd=cwd,
                env=env,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.git_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("git %s timed out", " ".join(args))
            return False, "Command timed out", 124
        except FileNotFoundError as error:
            raise WorkspaceCorrupt("git executable not found") from error
        output = result.stdout + result.stderr
        if result.returncode != 0:
            logger.debug("git %s exited %s: %s", " ".join(args), result.returncode, output.strip())
        return result.returncode == 0, output, result.returncode


def _is_remote_ahead(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _REJECTION_MARKERS)
