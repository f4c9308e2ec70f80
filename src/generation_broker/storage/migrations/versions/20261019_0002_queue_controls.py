"""Queue controls: persisted pause flag shared by every worker process."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_controls",
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.execute(
        "INSERT INTO queue_controls (name, paused, updated_at) "
        "VALUES ('generation', 0, CURRENT_TIMESTAMP)",
    )


def downgrade() -> None:
    op.drop_table("queue_controls")
