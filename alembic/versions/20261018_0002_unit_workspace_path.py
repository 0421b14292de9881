"""Pin each unit's checkout directory once it has been chosen."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "unit_workspaces",
        sa.Column(
            "workspace_path",
            sa.String(),
            nullable=True,
        ),
    )


def downgrade() -> None:
    with op.batch_alter_table("unit_workspaces") as batch_op:
        batch_op.drop_column("workspace_path")
