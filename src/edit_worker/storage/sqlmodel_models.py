"""SQLModel ORM tables for claims, thread contexts, queues, and results."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class ClaimRow(SQLModel, table=True):
    """Ownership record for one project+user unit."""

    __tablename__ = "claims"  # type: ignore[bad-override]

    unit_key: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    user_id: str = Field(index=True)
    worker_id: str = Field(index=True)
    status: str = Field(index=True)
    claimed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UnitWorkspaceRow(SQLModel, table=True):
    """Per-unit workspace bootstrap data remembered across messages."""

    __tablename__ = "unit_workspaces"  # type: ignore[bad-override]

    unit_key: str = Field(primary_key=True)
    repo_url: str | None = None
    workspace_path: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ThreadContextRow(SQLModel, table=True):
    """Durable conversation thread state for one unit."""

    __tablename__ = "thread_contexts"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("unit_key", "thread_id", name="pk_thread_contexts"),)

    unit_key: str
    thread_id: str
    branch: str
    history_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    last_commit: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessageRow(SQLModel, table=True):
    """One message on a named queue with lease-based visibility."""

    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_queue_messages_queue_status_seq", "queue_name", "status", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    queue_name: str = Field(index=True)
    body_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    attempts: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ResultRow(SQLModel, table=True):
    """Outbound result message emitted after a pipeline run settles."""

    __tablename__ = "results"  # type: ignore[bad-override]

    seq: int | None = Field(default=None, primary_key=True)
    unit_key: str = Field(index=True)
    command_id: str = Field(index=True)
    session_id: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
