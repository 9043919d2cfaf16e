"""Add the pending-delivery marker and the settings version

Revision ID: 003_overdue_marker
Revises: 002_add_last_wish
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003_overdue_marker"
down_revision: str = "002_add_last_wish"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    with op.batch_alter_table("last_wish_switches") as batch:
        batch.add_column(sa.Column("overdue_at", sa.DateTime(), nullable=True))
        batch.add_column(
            sa.Column("settings_version", sa.Integer(), nullable=False, server_default="0")
        )

    # Switches left mid-retry by earlier releases become pending deliveries
    op.execute(
        "UPDATE last_wish_switches SET overdue_at = first_failed_at "
        "WHERE delivered_at IS NULL AND first_failed_at IS NOT NULL"
    )


def downgrade() -> None:
    with op.batch_alter_table("last_wish_switches") as batch:
        batch.drop_column("settings_version")
        batch.drop_column("overdue_at")
