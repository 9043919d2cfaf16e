"""Add Last Wish switch, delivery log and epoch archive tables

Revision ID: 002_add_last_wish
Revises: 001_initial
Create Date: 2026-10-01

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_add_last_wish"
down_revision: str = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "last_wish_switches",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
            index=True,
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("frequency_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("include_data", sa.JSON(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("last_check_in", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("delivering", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claim_token", sa.String(36), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_failed_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("epoch", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("frequency_days > 0", name="ck_switch_frequency_positive"),
    )
    # Scheduler candidate scan
    op.create_index(
        "ix_last_wish_switches_candidates",
        "last_wish_switches",
        ["is_enabled", "delivered_at", "last_check_in"],
    )

    op.create_table(
        "last_wish_deliveries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "switch_id",
            sa.Uuid(),
            sa.ForeignKey("last_wish_switches.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("user_id", sa.Uuid(), nullable=False, index=True),
        sa.Column("epoch", sa.Integer(), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "last_wish_epochs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "switch_id",
            sa.Uuid(),
            sa.ForeignKey("last_wish_switches.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("user_id", sa.Uuid(), nullable=False, index=True),
        sa.Column("epoch", sa.Integer(), nullable=False),
        sa.Column("frequency_days", sa.Integer(), nullable=False),
        sa.Column("last_check_in", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=False),
        sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rearmed_at", sa.DateTime(), nullable=False),
    )
    op.create_unique_constraint("uq_switch_epoch", "last_wish_epochs", ["switch_id", "epoch"])


def downgrade() -> None:
    op.drop_constraint("uq_switch_epoch", "last_wish_epochs", type_="unique")
    op.drop_table("last_wish_epochs")
    op.drop_table("last_wish_deliveries")
    op.drop_index("ix_last_wish_switches_candidates", table_name="last_wish_switches")
    op.drop_table("last_wish_switches")
