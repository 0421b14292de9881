"""Commit message generation for pipeline, interrupt, and thread-switch commits."""

from __future__ import annotations

import textwrap
from datetime import datetime
from pathlib import PurePosixPath

SUBJECT_MAX_CHARS = 72
BODY_FILE_LIST_THRESHOLD = 3

_CONVERSATIONAL_PREFIXES = (
    "please ",
    "can you ",
    "could you ",
    "i need to ",
    "i want to ",
    "let's ",
    "help me ",
    "assist with ",
)


def thread_tag(thread_id: str) -> str:
    return f"[{thread_id[:8]}]" if thread_id else ""


def build_subject(*, instruction: str, files_changed: list[str], thread_id: str) -> str:
    """One-line summary: action, file summary, thread tag; capped at 72 chars.

    Only the action and file summary are shortened; the thread tag always survives.
    """

    subject, _ = _compose_subject(
        instruction=instruction,
        files_changed=files_changed,
        thread_id=thread_id,
    )
    return subject


def _compose_subject(
    *,
    instruction: str,
    files_changed: list[str],
    thread_id: str,
) -> tuple[str, bool]:
    parts: list[str] = []
    action = _extract_action(instruction)
    if action:
        parts.append(action)
    file_summary = summarize_files(files_changed)
    if file_summary:
        parts.append(f"({file_summary})")
    head = " ".join(parts) or "Update site"
    tag = thread_tag(thread_id)
    if not tag:
        return _truncate(head, SUBJECT_MAX_CHARS)
    head, truncated = _truncate(head, SUBJECT_MAX_CHARS - len(tag) - 1)
    return f"{head} {tag}", truncated


def build_body(
    *,
    instruction: str,
    files_changed: list[str],
    thread_id: str,
    user_id: str,
    timestamp: datetime,
) -> str:
    _, truncated = _compose_subject(
        instruction=instruction,
        files_changed=files_changed,
        thread_id=thread_id,
    )
    lines: list[str] = []
    if truncated:
        lines.append("Full instruction:")
        lines.extend(textwrap.wrap(instruction, SUBJECT_MAX_CHARS))
        lines.append("")
    if len(files_changed) > BODY_FILE_LIST_THRESHOLD:
        lines.append("Files changed:")
        lines.extend(f"  - {path}" for path in files_changed)
        lines.append("")
    lines.append("---")
    lines.append(f"Thread: {thread_id}")
    lines.append(f"User: {user_id}")
    lines.append(f"Time: {timestamp.isoformat()}")
    return "\n".join(lines)


def build_commit_message(
    *,
    instruction: str,
    files_changed: list[str],
    thread_id: str,
    user_id: str,
    timestamp: datetime,
) -> str:
    subject = build_subject(
        instruction=instruction,
        files_changed=files_changed,
        thread_id=thread_id,
    )
    body = build_body(
        instruction=instruction,
        files_changed=files_changed,
        thread_id=thread_id,
        user_id=user_id,
        timestamp=timestamp,
    )
    return f"{subject}\n\n{body}\n"


def interrupted_commit_message(*, files_count: int, thread_id: str) -> str:
    tag = thread_tag(thread_id)
    if files_count > 0:
        return f"WIP: Interrupted with {files_count} file(s) modified {tag}".rstrip()
    return f"WIP: Session interrupted {tag}".rstrip()


def thread_switch_commit_message(*, thread_id: str) -> str:
    return f"WIP: Switching threads {thread_tag(thread_id)}".rstrip()


def summarize_files(files: list[str]) -> str:
    """Short description: basename, shared extension, shared directory, or a count."""

    if not files:
        return ""
    if len(files) == 1:
        return PurePosixPath(files[0]).name

    extensions = {PurePosixPath(path).suffix.lstrip(".") for path in files}
    if len(extensions) == 1:
        (extension,) = extensions
        if extension:
            return f"{len(files)} {extension} files"

    parents = {str(PurePosixPath(path).parent) for path in files}
    if len(parents) == 1:
        (parent,) = parents
        name = PurePosixPath(parent).name
        if name:
            return f"{len(files)} files in {name}"

    return f"{len(files)} files"


def _extract_action(instruction: str) -> str:
    action = " ".join(instruction.split())
    if not action:
        return ""
    lowered = action.lower()
    for prefix in _CONVERSATIONAL_PREFIXES:
        if lowered.startswith(prefix):
            action = action[len(prefix) :]
            break
    return action[:1].upper() + action[1:]


def _truncate(message: str, limit: int) -> tuple[str, bool]:
    if len(message) <= limit:
        return message, False
    return message[: limit - 3].rstrip() + "...", True
