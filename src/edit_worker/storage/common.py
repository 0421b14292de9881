"""SQLite connection policy and timestamp helpers shared by the worker store.

Several worker processes open the same database file, so every connection runs
in WAL mode with a busy timeout and claims are settled with conditional UPDATEs.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """SQLite columns hold naive UTC; aware values are converted, naive ones trusted."""

    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(UTC)
    return value.replace(tzinfo=UTC)


def _policy_statements(busy_timeout_ms: int) -> tuple[str, ...]:
    return (
        "PRAGMA journal_mode = WAL",
        f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}",
        "PRAGMA foreign_keys = ON",
    )


def _apply_policy(dbapi_connection: sqlite3.Connection, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for statement in _policy_statements(busy_timeout_ms):
            cursor.execute(statement)
    finally:
        cursor.close()


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """SQLAlchemy engine for the worker store.

    NullPool gives each session its own connection, which keeps worker threads
    from sharing a sqlite3 handle.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_policy(dbapi_connection, busy_timeout_ms)

    return engine


def connect_sqlite_with_policy(*, db_path: Path, busy_timeout_ms: int) -> sqlite3.Connection:
    """Raw sqlite3 connection under the same policy, rows addressable by column name."""

    connection = sqlite3.connect(db_path, check_same_thread=False)
    _apply_policy(connection, busy_timeout_ms)
    connection.row_factory = sqlite3.Row
    return connection
