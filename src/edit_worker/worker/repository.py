"""Persistent claim store, thread contexts, queues, and results."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import ColumnElement, and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from edit_worker.storage.alembic_runner import upgrade_head
from edit_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from edit_worker.storage.sqlmodel_models import (
    ClaimRow,
    QueueMessageRow,
    ResultRow,
    ThreadContextRow,
    UnitWorkspaceRow,
)
from edit_worker.worker.contracts import dumps_payload, loads_payload
from edit_worker.worker.models import (
    ClaimRecord,
    ClaimStatus,
    QueuedMessage,
    QueueMessageStatus,
    ResultView,
    ThreadContext,
    ThreadHistoryEntry,
    WorkUnit,
)

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (QueueMessageStatus.PENDING.value, QueueMessageStatus.LEASED.value)


class WorkerRepository:
    """Claim and queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Claims

    def insert_claim(self, *, unit: WorkUnit, worker_id: str) -> bool:
        """Create an active claim if none exists; False when a record is present."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.add(
                ClaimRow(
                    unit_key=unit.key,
                    project_id=unit.project_id,
                    user_id=unit.user_id,
                    worker_id=worker_id,
                    status=ClaimStatus.ACTIVE.value,
                    claimed_at=now,
                    last_activity_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def take_over_claim(self, *, unit: WorkUnit, worker_id: str) -> bool:
        """Re-activate an existing record owned by ``worker_id`` or released by anyone."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClaimRow)
                .where(
                    col(ClaimRow.unit_key) == unit.key,
                    or_(
                        col(ClaimRow.worker_id) == worker_id,
                        col(ClaimRow.status) == ClaimStatus.RELEASED.value,
                    ),
                )
                .values(
                    worker_id=worker_id,
                    status=ClaimStatus.ACTIVE.value,
                    claimed_at=now,
                    last_activity_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def renew_claim(self, *, unit: WorkUnit, worker_id: str, status: ClaimStatus) -> bool:
        """Refresh last activity; False when the claim is no longer held by ``worker_id``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClaimRow)
                .where(
                    col(ClaimRow.unit_key) == unit.key,
                    col(ClaimRow.worker_id) == worker_id,
                    col(ClaimRow.status) != ClaimStatus.RELEASED.value,
                )
                .values(
                    status=status.value,
                    last_activity_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def release_claim(self, *, unit: WorkUnit, worker_id: str) -> bool:
        """Mark the claim released if still held by ``worker_id``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClaimRow)
                .where(
                    col(ClaimRow.unit_key) == unit.key,
                    col(ClaimRow.worker_id) == worker_id,
                    col(ClaimRow.status) != ClaimStatus.RELEASED.value,
                )
                .values(status=ClaimStatus.RELEASED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def get_claim(self, unit: WorkUnit) -> ClaimRecord | None:
        with Session(self.engine) as session:
            row = session.get(ClaimRow, unit.key)
            if row is None:
                return None
            return _to_claim_record(row)

    def list_claims(self, *, status: ClaimStatus | None = None) -> list[ClaimRecord]:
        with Session(self.engine) as session:
            query = select(ClaimRow)
            if status is not None:
                query = query.where(ClaimRow.status == status.value)
            rows = session.exec(query.order_by(col(ClaimRow.unit_key).asc())).all()
            return [_to_claim_record(row) for row in rows]

    def reap_stale_claims(self, *, stale_after: timedelta) -> list[WorkUnit]:
        """Release claims whose last activity is older than ``stale_after``."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        reaped: list[WorkUnit] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(ClaimRow).where(
                    ClaimRow.status != ClaimStatus.RELEASED.value,
                    col(ClaimRow.last_activity_at) < cutoff,
                ),
            ).all()
            for candidate in candidates:
                result = session.exec(
                    sa_update(ClaimRow)
                    .where(
                        col(ClaimRow.unit_key) == candidate.unit_key,
                        col(ClaimRow.worker_id) == candidate.worker_id,
                        col(ClaimRow.last_activity_at) == candidate.last_activity_at,
                    )
                    .values(
                        status=ClaimStatus.RELEASED.value,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount == 1:
                    reaped.append(WorkUnit.from_key(candidate.unit_key))
                    logger.info(
                        "Reaped stale claim %s held by %s",
                        candidate.unit_key,
                        candidate.worker_id,
                    )
            session.commit()
        return reaped

    # Unit workspace bootstrap

    def remember_repo_url(self, *, unit: WorkUnit, repo_url: str) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(UnitWorkspaceRow, unit.key)
            if row is None:
                session.add(UnitWorkspaceRow(unit_key=unit.key, repo_url=repo_url, updated_at=now))
            else:
                row.repo_url = repo_url
                row.updated_at = now
                session.add(row)
            session.commit()

    def get_repo_url(self, unit: WorkUnit) -> str | None:
        with Session(self.engine) as session:
            row = session.get(UnitWorkspaceRow, unit.key)
            return None if row is None else row.repo_url

    def get_workspace_path(self, unit: WorkUnit) -> Path | None:
        with Session(self.engine) as session:
            row = session.get(UnitWorkspaceRow, unit.key)
            if row is None or not row.workspace_path:
                return None
            return Path(row.workspace_path)

    def pin_workspace_path(self, *, unit: WorkUnit, workspace_path: Path) -> Path:
        """Record the unit's checkout directory unless one is already pinned.

        Returns the pinned path, which wins over ``workspace_path`` so that
        local commits and stashes stay reachable across claims.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(UnitWorkspaceRow, unit.key)
            if row is None:
                row = UnitWorkspaceRow(unit_key=unit.key, updated_at=now)
            elif row.workspace_path:
                return Path(row.workspace_path)
            row.workspace_path = str(workspace_path)
            row.updated_at = now
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                pinned = self.get_workspace_path(unit)
                if pinned is None:
                    raise
                return pinned
        return workspace_path

    # Thread contexts

    def load_thread_context(self, *, unit: WorkUnit, thread_id: str) -> ThreadContext | None:
        with Session(self.engine) as session:
            row = session.get(ThreadContextRow, (unit.key, thread_id))
            if row is None:
                return None
            raw_history = json.loads(row.history_json or "[]")
            return ThreadContext(
                thread_id=row.thread_id,
                branch=row.branch,
                history=[
                    ThreadHistoryEntry.from_payload(item)
                    for item in raw_history
                    if isinstance(item, dict)
                ],
                last_commit=row.last_commit,
            )

    def thread_id_for_branch(self, *, unit: WorkUnit, branch: str) -> str | None:
        with Session(self.engine) as session:
            return session.exec(
                select(ThreadContextRow.thread_id).where(
                    ThreadContextRow.unit_key == unit.key,
                    ThreadContextRow.branch == branch,
                ),
            ).first()

    def save_thread_context(self, *, unit: WorkUnit, context: ThreadContext) -> None:
        now = to_db_datetime(utc_now())
        history_json = json.dumps(
            [entry.to_payload() for entry in context.history],
            ensure_ascii=False,
        )
        with Session(self.engine) as session:
            row = session.get(ThreadContextRow, (unit.key, context.thread_id))
            if row is None:
                row = ThreadContextRow(
                    unit_key=unit.key,
                    thread_id=context.thread_id,
                    branch=context.branch,
                    history_json=history_json,
                    last_commit=context.last_commit,
                    updated_at=now,
                )
            else:
                row.branch = context.branch
                row.history_json = history_json
                row.last_commit = context.last_commit
                row.updated_at = now
            session.add(row)
            session.commit()

    # Queues

    def enqueue(
        self,
        *,
        queue_name: str,
        body: dict[str, Any],
        delay_seconds: float = 0.0,
    ) -> int:
        """Append a message and return its sequence number."""

        now = utc_now()
        with Session(self.engine) as session:
            row = QueueMessageRow(
                queue_name=queue_name,
                body_json=dumps_payload(body),
                status=QueueMessageStatus.PENDING.value,
                attempts=0,
                available_at=to_db_datetime(now + timedelta(seconds=max(0.0, delay_seconds))),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.seq is None:
                raise RuntimeError("Queue insert did not assign a sequence number.")
            return row.seq

    def lease_next(
        self,
        *,
        queue_name: str,
        owner: str,
        visibility_timeout_seconds: float,
        fifo: bool,
    ) -> QueuedMessage | None:
        """Atomically lease one visible message.

        With ``fifo`` only the oldest open message is eligible, so a message
        that is leased elsewhere or waiting out a retry delay blocks the
        stream behind it.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                query = select(QueueMessageRow).where(
                    QueueMessageRow.queue_name == queue_name,
                    col(QueueMessageRow.status).in_(_OPEN_STATUSES),
                )
                if not fifo:
                    query = query.where(_visible_clause(now=now, owner=owner))
                candidate = session.exec(
                    query.order_by(col(QueueMessageRow.seq).asc()).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                if fifo and not _is_visible(candidate, now=now, owner=owner):
                    return None

                result = session.exec(
                    sa_update(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.seq) == candidate.seq,
                        col(QueueMessageRow.status) == candidate.status,
                        col(QueueMessageRow.attempts) == candidate.attempts,
                    )
                    .values(
                        status=QueueMessageStatus.LEASED.value,
                        attempts=candidate.attempts + 1,
                        lease_owner=owner,
                        lease_expires_at=now + timedelta(seconds=visibility_timeout_seconds),
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                leased = session.exec(
                    select(QueueMessageRow).where(QueueMessageRow.seq == candidate.seq),
                ).one()
                view = _to_queued_message(leased)
                session.commit()
                return view

    def extend_lease(self, *, seq: int, owner: str, visibility_timeout_seconds: float) -> bool:
        now = to_db_datetime(utc_now())
        return self._update_leased(
            seq=seq,
            owner=owner,
            values={
                "lease_expires_at": now + timedelta(seconds=visibility_timeout_seconds),
                "updated_at": now,
            },
        )

    def ack_message(self, *, seq: int, owner: str) -> bool:
        """Acknowledge a leased message after its pipeline reached a terminal stage."""

        now = to_db_datetime(utc_now())
        return self._update_leased(
            seq=seq,
            owner=owner,
            values={
                "status": QueueMessageStatus.ACKED.value,
                "lease_expires_at": None,
                "finished_at": now,
                "updated_at": now,
            },
        )

    def release_message(
        self,
        *,
        seq: int,
        owner: str,
        delay_seconds: float = 0.0,
        error: str | None = None,
    ) -> bool:
        """Return a leased message to the stream, optionally after a delay."""

        now = utc_now()
        return self._update_leased(
            seq=seq,
            owner=owner,
            values={
                "status": QueueMessageStatus.PENDING.value,
                "lease_owner": None,
                "lease_expires_at": None,
                "available_at": to_db_datetime(now + timedelta(seconds=max(0.0, delay_seconds))),
                "last_error": error,
                "updated_at": to_db_datetime(now),
            },
        )

    def dead_letter_message(self, *, seq: int, owner: str, error: str | None) -> bool:
        now = to_db_datetime(utc_now())
        return self._update_leased(
            seq=seq,
            owner=owner,
            values={
                "status": QueueMessageStatus.DEAD_LETTER.value,
                "lease_expires_at": None,
                "last_error": error,
                "finished_at": now,
                "updated_at": now,
            },
        )

    def has_newer_message(self, *, queue_name: str, after_seq: int) -> bool:
        """Whether an open message arrived on ``queue_name`` after ``after_seq``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(QueueMessageRow.seq)
                .where(
                    QueueMessageRow.queue_name == queue_name,
                    col(QueueMessageRow.status).in_(_OPEN_STATUSES),
                    col(QueueMessageRow.seq) > after_seq,
                )
                .limit(1),
            ).first()
            return row is not None

    def list_messages(
        self,
        *,
        queue_name: str | None = None,
        status: QueueMessageStatus | None = None,
        limit: int = 50,
    ) -> list[QueuedMessage]:
        with Session(self.engine) as session:
            query = select(QueueMessageRow)
            if queue_name is not None:
                query = query.where(QueueMessageRow.queue_name == queue_name)
            if status is not None:
                query = query.where(QueueMessageRow.status == status.value)
            rows = session.exec(
                query.order_by(col(QueueMessageRow.seq).asc()).limit(limit),
            ).all()
            return [_to_queued_message(row) for row in rows]

    def get_message(self, seq: int) -> QueuedMessage | None:
        with Session(self.engine) as session:
            row = session.get(QueueMessageRow, seq)
            return None if row is None else _to_queued_message(row)

    def _update_leased(self, *, seq: int, owner: str, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.seq) == seq,
                    col(QueueMessageRow.status) == QueueMessageStatus.LEASED.value,
                    col(QueueMessageRow.lease_owner) == owner,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    # Results

    def add_result(self, *, unit: WorkUnit, payload: dict[str, Any]) -> int:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = ResultRow(
                unit_key=unit.key,
                command_id=str(payload.get("commandId", "")),
                session_id=str(payload.get("sessionId", "")),
                payload_json=dumps_payload(payload),
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.seq is None:
                raise RuntimeError("Result insert did not assign a sequence number.")
            return row.seq

    def list_results(self, *, unit: WorkUnit | None = None, limit: int = 100) -> list[ResultView]:
        with Session(self.engine) as session:
            query = select(ResultRow)
            if unit is not None:
                query = query.where(ResultRow.unit_key == unit.key)
            rows = session.exec(query.order_by(col(ResultRow.seq).asc()).limit(limit)).all()
            return [
                ResultView(
                    seq=row.seq or 0,
                    unit_key=row.unit_key,
                    command_id=row.command_id,
                    payload=loads_payload(row.payload_json),
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]


def _visible_clause(*, now: datetime, owner: str) -> ColumnElement[bool]:
    return or_(
        and_(
            col(QueueMessageRow.status) == QueueMessageStatus.PENDING.value,
            col(QueueMessageRow.available_at) <= now,
        ),
        and_(
            col(QueueMessageRow.status) == QueueMessageStatus.LEASED.value,
            or_(
                col(QueueMessageRow.lease_expires_at) <= now,
                col(QueueMessageRow.lease_owner) == owner,
            ),
        ),
    )


def _is_visible(row: QueueMessageRow, *, now: datetime, owner: str) -> bool:
    if row.status == QueueMessageStatus.PENDING.value:
        return row.available_at <= now
    if row.lease_owner == owner:
        return True
    return row.lease_expires_at is not None and row.lease_expires_at <= now


def _to_claim_record(row: ClaimRow) -> ClaimRecord:
    return ClaimRecord(
        unit=WorkUnit(project_id=row.project_id, user_id=row.user_id),
        worker_id=row.worker_id,
        status=ClaimStatus(row.status),
        claimed_at=to_utc_aware_datetime(row.claimed_at),
        last_activity_at=to_utc_aware_datetime(row.last_activity_at),
    )


def _to_queued_message(row: QueueMessageRow) -> QueuedMessage:
    return QueuedMessage(
        seq=row.seq or 0,
        queue_name=row.queue_name,
        body=loads_payload(row.body_json),
        status=QueueMessageStatus(row.status),
        attempts=row.attempts,
        lease_owner=row.lease_owner,
        lease_expires_at=(
            to_utc_aware_datetime(row.lease_expires_at)
            if row.lease_expires_at is not None
            else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        last_error=row.last_error,
    )
