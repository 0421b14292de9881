"""Create claim, thread context, queue, and result tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "claims",
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("unit_key"),
    )
    op.create_index("ix_claims_project_id", "claims", ["project_id"])
    op.create_index("ix_claims_user_id", "claims", ["user_id"])
    op.create_index("ix_claims_worker_id", "claims", ["worker_id"])
    op.create_index("ix_claims_status", "claims", ["status"])
    op.create_index("ix_claims_last_activity_at", "claims", ["last_activity_at"])

    op.create_table(
        "unit_workspaces",
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("repo_url", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("unit_key"),
    )

    op.create_table(
        "thread_contexts",
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("history_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_commit", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("unit_key", "thread_id", name="pk_thread_contexts"),
    )

    op.create_table(
        "queue_messages",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("seq"),
    )
    op.create_index("ix_queue_messages_queue_name", "queue_messages", ["queue_name"])
    op.create_index(
        "ix_queue_messages_queue_status_seq",
        "queue_messages",
        ["queue_name", "status", "seq"],
    )

    op.create_table(
        "results",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("unit_key", sa.String(), nullable=False),
        sa.Column("command_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
    )
    op.create_index("ix_results_unit_key", "results", ["unit_key"])
    op.create_index("ix_results_command_id", "results", ["command_id"])


def downgrade() -> None:
    op.drop_index("ix_results_command_id", table_name="results")
    op.drop_index("ix_results_unit_key", table_name="results")
    op.drop_table("results")
    op.drop_index("ix_queue_messages_queue_status_seq", table_name="queue_messages")
    op.drop_index("ix_queue_messages_queue_name", table_name="queue_messages")
    op.drop_table("queue_messages")
    op.drop_table("thread_contexts")
    op.drop_table("unit_workspaces")
    op.drop_index("ix_claims_last_activity_at", table_name="claims")
    op.drop_index("ix_claims_status", table_name="claims")
    op.drop_index("ix_claims_worker_id", table_name="claims")
    op.drop_index("ix_claims_user_id", table_name="claims")
    op.drop_index("ix_claims_project_id", table_name="claims")
    op.drop_table("claims")
