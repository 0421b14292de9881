"""CLI entrypoint for edit-worker."""

import logging
from pathlib import Path

import rich_click as click

from edit_worker import __version__
from edit_worker.worker.controllers import (
    ClaimsListCommand,
    ClaimsReapCommand,
    DeadLettersListCommand,
    EnqueueClaimCommand,
    EnqueueWorkCommand,
    ResultsListCommand,
    ThreadShowCommand,
    UnitCommand,
    WorkerCliController,
    WorkerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="edit-worker")
def edit_worker() -> None:
    """Claim project+user units and apply queued edit instructions to their sites."""


@edit_worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Drain currently queued work, release every claim, and exit.",
)
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after leasing this many work messages.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls with no unit active.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def run(
    db_path: Path | None,
    once: bool,
    max_messages: int | None,
    max_idle_polls: int | None,
    log_level: str,
) -> None:
    """Run the claim and work consumer loop until stopped.

    SIGINT/SIGTERM let every in-flight message reach a terminal stage, then
    release the held claims.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    try:
        lines = WORKER_CONTROLLER.run(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_messages=max_messages,
                max_idle_polls=max_idle_polls,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@edit_worker.group()
def enqueue() -> None:
    """Queue producer commands."""


@enqueue.command("work")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project identifier.")
@click.option("--user", "user_id", required=True, help="User identifier.")
@click.option("--thread", "thread_id", required=True, help="Conversation thread identifier.")
@click.option("--instruction", required=True, help="Edit instruction text.")
@click.option(
    "--repo-url",
    default=None,
    help="Repository to clone on first contact with the unit.",
)
@click.option("--session-id", default=None, help="Session id (generated when omitted).")
@click.option("--command-id", default=None, help="Command id (generated when omitted).")
def enqueue_work(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    user_id: str,
    thread_id: str,
    instruction: str,
    repo_url: str | None,
    session_id: str | None,
    command_id: str | None,
) -> None:
    """Append an instruction to the unit's private stream."""

    _emit_lines(
        WORKER_CONTROLLER.enqueue_work(
            EnqueueWorkCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                thread_id=thread_id,
                instruction=instruction,
                repo_url=repo_url,
                session_id=session_id,
                command_id=command_id,
            ),
        ),
    )


@enqueue.command("claim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project identifier.")
@click.option("--user", "user_id", required=True, help="User identifier.")
@click.option("--thread", "thread_id", default="", help="Thread that triggered the request.")
def enqueue_claim(db_path: Path | None, project_id: str, user_id: str, thread_id: str) -> None:
    """Publish a claim request on the shared unclaimed stream."""

    _emit_lines(
        WORKER_CONTROLLER.enqueue_claim(
            EnqueueClaimCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                thread_id=thread_id,
            ),
        ),
    )


@edit_worker.group()
def claims() -> None:
    """Claim inspection and maintenance."""


@claims.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["active", "idle", "released"], case_sensitive=False),
    default=None,
    help="Filter by claim status.",
)
def claims_list(db_path: Path | None, status: str | None) -> None:
    """List claim records."""

    _emit_lines(
        WORKER_CONTROLLER.list_claims(
            ClaimsListCommand(db_path=db_path, status=status.lower() if status else None),
        ),
    )


@claims.command("release")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project identifier.")
@click.option("--user", "user_id", required=True, help="User identifier.")
def claims_release(db_path: Path | None, project_id: str, user_id: str) -> None:
    """Force-release a unit's claim whoever holds it."""

    _emit_lines(
        WORKER_CONTROLLER.release_claim(
            UnitCommand(db_path=db_path, project_id=project_id, user_id=user_id),
        ),
    )


@claims.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-after-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Inactivity threshold; defaults to the configured reclaim timeout.",
)
def claims_reap(db_path: Path | None, stale_after_seconds: float | None) -> None:
    """Release claims whose owner stopped renewing them."""

    _emit_lines(
        WORKER_CONTROLLER.reap_claims(
            ClaimsReapCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@edit_worker.group()
def results() -> None:
    """Outbound result inspection."""


@results.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", default=None, help="Project filter (needs --user).")
@click.option("--user", "user_id", default=None, help="User filter (needs --project).")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of results to print.",
)
def results_list(
    db_path: Path | None,
    project_id: str | None,
    user_id: str | None,
    limit: int,
) -> None:
    """Print emitted result messages in emission order."""

    if bool(project_id) != bool(user_id):
        raise click.UsageError("--project and --user must be given together.")
    _emit_lines(
        WORKER_CONTROLLER.list_results(
            ResultsListCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                limit=limit,
            ),
        ),
    )


@edit_worker.group("dead-letters")
def dead_letters() -> None:
    """Dead-letter inspection."""


@dead_letters.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of messages to print.",
)
def dead_letters_list(db_path: Path | None, limit: int) -> None:
    """List messages that exhausted their retries or failed validation."""

    _emit_lines(
        WORKER_CONTROLLER.list_dead_letters(
            DeadLettersListCommand(db_path=db_path, limit=limit),
        ),
    )


@edit_worker.group()
def threads() -> None:
    """Thread context inspection."""


@threads.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_id", required=True, help="Project identifier.")
@click.option("--user", "user_id", required=True, help="User identifier.")
@click.option("--thread", "thread_id", required=True, help="Thread identifier.")
def threads_show(db_path: Path | None, project_id: str, user_id: str, thread_id: str) -> None:
    """Show a thread's branch, last commit and instruction history."""

    _emit_lines(
        WORKER_CONTROLLER.show_thread(
            ThreadShowCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                thread_id=thread_id,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    edit_worker()
