"""Add plan and daily usage columns to users (idempotent).

Revision ID: 002_plan_usage_columns
Revises: 001_initial
Create Date: 2026-03-02

Uses ADD COLUMN IF NOT EXISTS so it is safe on databases where create_all
already created the columns. Non-Postgres databases are created from the
models directly and are skipped.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "002_plan_usage_columns"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "postgresql":
        return

    conn.execute(
        sa.text(
            "ALTER TABLE users "
            "ADD COLUMN IF NOT EXISTS plan_tier VARCHAR(16) NOT NULL DEFAULT 'free'"
        )
    )
    conn.execute(
        sa.text(
            "ALTER TABLE users "
            "ADD COLUMN IF NOT EXISTS daily_usage_count INTEGER NOT NULL DEFAULT 0"
        )
    )
    conn.execute(
        sa.text(
            "ALTER TABLE users "
            "ADD COLUMN IF NOT EXISTS last_usage_date DATE"
        )
    )
    conn.execute(
        sa.text(
            "ALTER TABLE users "
            "ADD COLUMN IF NOT EXISTS paypal_subscription_id VARCHAR(255)"
        )
    )
    # Partial unique index: many free users share NULL
    conn.execute(
        sa.text(
            "CREATE UNIQUE INDEX IF NOT EXISTS ix_users_paypal_subscription_id "
            "ON users (paypal_subscription_id) WHERE paypal_subscription_id IS NOT NULL"
        )
    )
    # Daily reset filters on plan_tier
    conn.execute(
        sa.text(
            "CREATE INDEX IF NOT EXISTS ix_users_plan_tier ON users (plan_tier)"
        )
    )


def downgrade() -> None:
    """No-op downgrade (keep columns; safe for existing deployments)."""
    pass
