"""SQLAlchemy ORM models for the reports database.

Tables:
    reports       One row per (category, period_start, period_end,
                  granularity); ``version`` backs optimistic updates.
    events_inbox  One row per applied event id (idempotency ledger).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

REPORT_KEY_CONSTRAINT = "uq_reports_category_period"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


class ReportRecord(Base):
    """Persisted report.

    Maps from :class:`report_aggregator.core.models.Report`.  Rows are
    created once by ``find_or_create`` and afterwards only their
    indicators, ``version`` and ``updated_at`` change.
    """

    __tablename__ = "reports"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_new_uuid,
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    granularity: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    indicators: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    metadata_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="generated")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "category", "period_start", "period_end", "granularity",
            name=REPORT_KEY_CONSTRAINT,
        ),
        Index("ix_reports_status_generated_at", "status", "generated_at"),
        Index("ix_reports_period_start", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReportRecord(id={self.id!s}, category={self.category!r}, "
            f"period_start={self.period_start!s}, version={self.version})>"
        )


class ProcessedEventRecord(Base):
    """Idempotency ledger entry.  The primary key is the uniqueness gate."""

    __tablename__ = "events_inbox"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_events_inbox_processed_at", "processed_at"),
    )
