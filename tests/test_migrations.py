from pathlib import Path

import allure

from edit_worker.storage.common import connect_sqlite_with_policy
from edit_worker.worker.repository import WorkerRepository

pytestmark = [
    allure.epic("Edit Worker"),
    allure.feature("Claim & Queue Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = WorkerRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    connection = connect_sqlite_with_policy(db_path=db_path, busy_timeout_ms=1_000)
    try:
        row = connection.execute("SELECT version_num FROM alembic_version LIMIT 1").fetchone()
        assert row is not None
        assert str(row["version_num"]) == "20261018_0002"

        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table'
              AND name IN ('claims', 'queue_messages', 'results',
                           'thread_contexts', 'unit_workspaces')
            ORDER BY name
            """
        ).fetchall()
        journal_mode = connection.execute("PRAGMA journal_mode").fetchone()
    finally:
        connection.close()

    assert [str(row["name"]) for row in tables] == [
        "claims",
        "queue_messages",
        "results",
        "thread_contexts",
        "unit_workspaces",
    ]
    assert str(journal_mode[0]).lower() == "wal"
