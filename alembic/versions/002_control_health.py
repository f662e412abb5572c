"""Control health and governance reviews.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def upgrade() -> None:
    op.create_table(
        "control_health",
        sa.Column("metric", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, comment="healthy | warning | failed"),
        sa.Column("score", sa.Integer(), nullable=False, comment="0-100"),
        sa.Column("value", sa.Float()),
        sa.Column("notes", sa.String(500)),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("metric"),
    )

    op.create_table(
        "governance_reviews",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("review_period", sa.String(20), nullable=False, comment="e.g. 2026-Q1"),
        sa.Column("reviewer_id", sa.String(100), nullable=False),
        sa.Column("reviewer_email", sa.String(255), nullable=False),
        sa.Column("summary", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_governance_reviews_created_at", "governance_reviews", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_governance_reviews_created_at", table_name="governance_reviews")
    op.drop_table("governance_reviews")
    op.drop_table("control_health")
