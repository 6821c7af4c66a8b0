"""Initial schema: reports, events_inbox.

Revision ID: 001_initial
Revises: None
Create Date: 2024-01-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Reports: one row per (category, period)
    op.create_table(
        "reports",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("category", sa.String(64), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("granularity", sa.String(16), nullable=False, server_default="daily"),
        sa.Column("indicators", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("metadata_json", JSONB, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="generated"),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("generated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "category", "period_start", "period_end", "granularity",
            name="uq_reports_category_period",
        ),
    )
    op.create_index("ix_reports_status_generated_at", "reports", ["status", "generated_at"])
    op.create_index("ix_reports_period_start", "reports", ["period_start"])

    # Idempotency ledger
    op.create_table(
        "events_inbox",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_events_inbox_processed_at", "events_inbox", ["processed_at"])


def downgrade() -> None:
    op.drop_table("events_inbox")
    op.drop_table("reports")
