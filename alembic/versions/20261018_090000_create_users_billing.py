"""Create users table with billing fields

Revision ID: 3f9c1a7d2b10
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1a7d2b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLAN_VALUES = ("free", "pro")


def upgrade() -> None:
    """Upgrade database schema."""
    userplan_enum = postgresql.ENUM(*PLAN_VALUES, name="userplan", create_type=False)
    userplan_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("uid", sa.String(length=128), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("daily_summary_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("daily_summary_reset_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("plan", userplan_enum, server_default="free", nullable=False),
        sa.Column("subscription", postgresql.JSONB(), nullable=True),
        sa.Column(
            "invoices",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
    )
    # Non-unique: one customer per user is kept by checkout, not the database
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("ix_users_stripe_customer_id", table_name="users")
    op.drop_table("users")
    sa.Enum(name="userplan").drop(op.get_bind(), checkfirst=True)
