"""PostgreSQL implementations of the ledger and aggregate store.

Concurrency strategy
--------------------
*  Report creation relies on the ``uq_reports_category_period`` unique
   constraint: ``INSERT .. ON CONFLICT DO NOTHING`` followed by a read,
   so a losing racer simply reads the winner's row.
*  Indicator updates are optimistic: read ``version``, compute, then
   ``UPDATE .. WHERE version = :seen``.  Zero rows updated means another
   writer got there first; the whole unit is rolled back and retried
   against the fresh row.
*  ``apply_and_mark`` inserts the ``events_inbox`` row in the same
   transaction as the versioned update.  A concurrent duplicate blocks
   on the primary key until the first transaction resolves, then sees
   the conflict and backs out.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from report_aggregator.core.enums import Granularity, ReportStatus
from report_aggregator.core.errors import (
    ConcurrencyConflict,
    InadmissibleEventError,
    LedgerUnavailable,
    ReportNotFoundError,
    StoreUnavailable,
)
from report_aggregator.core.clock import as_utc, utc_now
from report_aggregator.core.models import (
    MarkResult,
    MetricsSummary,
    Pagination,
    Period,
    Report,
    ReportPage,
)
from report_aggregator.storage.interfaces import ComputeNext

from .models import REPORT_KEY_CONSTRAINT, ProcessedEventRecord, ReportRecord

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class _StaleVersion(Exception):
    """Internal: the versioned UPDATE matched no row."""


def _is_connection_error(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _record_to_report(record: ReportRecord) -> Report:
    """Convert an ORM :class:`ReportRecord` to a core :class:`Report`."""
    return Report(
        id=str(record.id),
        category=record.category,
        period_start=record.period_start,
        period_end=record.period_end,
        granularity=Granularity(record.granularity),
        indicators=record.indicators or {},
        metadata=record.metadata_json or {},
        status=ReportStatus(record.status),
        generated_at=record.generated_at,
        updated_at=record.updated_at,
        version=record.version,
    )


def _parse_id(report_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(report_id)
    except (ValueError, TypeError) as exc:
        raise ReportNotFoundError(report_id) from exc


def _period_filter(
    stmt: Any, period_from: datetime | None, period_to: datetime | None,
) -> Any:
    if period_from is not None:
        stmt = stmt.where(ReportRecord.period_start >= as_utc(period_from))
    if period_to is not None:
        stmt = stmt.where(ReportRecord.period_start <= as_utc(period_to))
    return stmt


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class PostgresLedger:
    """``events_inbox``-backed idempotency ledger."""

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def is_processed(self, event_id: str) -> bool:
        try:
            async with self._session_scope() as session:
                found = await session.scalar(
                    select(ProcessedEventRecord.event_id).where(
                        ProcessedEventRecord.event_id == event_id
                    )
                )
        except DBAPIError as exc:
            if _is_connection_error(exc):
                raise LedgerUnavailable(str(exc)) from exc
            raise
        return found is not None

    async def mark_processed(self, event_id: str) -> MarkResult:
        if not event_id or not event_id.strip():
            raise InadmissibleEventError("Cannot ledger an event without id")
        try:
            async with self._session_scope() as session:
                applied = await insert_ledger_entry(session, event_id)
        except DBAPIError as exc:
            if _is_connection_error(exc):
                raise LedgerUnavailable(str(exc)) from exc
            raise
        return MarkResult(applied=applied)

    async def prune(self, older_than: datetime) -> int:
        """Delete inbox rows processed before *older_than*."""
        older_than = as_utc(older_than)
        async with self._session_scope() as session:
            result = await session.execute(
                delete(ProcessedEventRecord).where(
                    ProcessedEventRecord.processed_at < older_than
                )
            )
        deleted = result.rowcount or 0
        logger.info("Pruned %d ledger entries older than %s", deleted, older_than)
        return deleted

    async def close(self) -> None:
        pass


async def insert_ledger_entry(session: AsyncSession, event_id: str) -> bool:
    """Insert-if-absent inside *session*.  ``True`` if this call inserted."""
    stmt = (
        pg_insert(ProcessedEventRecord)
        .values(event_id=event_id, processed_at=utc_now())
        .on_conflict_do_nothing(index_elements=[ProcessedEventRecord.event_id])
        .returning(ProcessedEventRecord.event_id)
    )
    inserted = await session.scalar(stmt)
    return inserted is not None


# ---------------------------------------------------------------------------
# Aggregate store
# ---------------------------------------------------------------------------

class PostgresReportStore:
    """Report store over the ``reports`` table.

    Args:
        session_scope: Transaction scope factory, normally
            :meth:`ReportDatabase.session`.
        max_update_retries: Optimistic attempts before
            :class:`ConcurrencyConflict`.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        max_update_retries: int = 10,
    ) -> None:
        self._session_scope = session_scope
        self._max_retries = max_update_retries
        self._ledger = PostgresLedger(session_scope)

    @property
    def ledger(self) -> PostgresLedger:
        """Ledger living in the same database (enables atomic commit)."""
        return self._ledger

    # -- write side ------------------------------------------------------

    async def find_or_create(self, category: str, period: Period) -> Report:
        now = utc_now()
        insert_stmt = (
            pg_insert(ReportRecord)
            .values(
                id=uuid.uuid4(),
                category=category,
                period_start=period.start,
                period_end=period.end,
                granularity=period.granularity.value,
                indicators={},
                metadata_json={"createdBy": "aggregator"},
                status=ReportStatus.GENERATED.value,
                version=0,
                generated_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(constraint=REPORT_KEY_CONSTRAINT)
        )
        select_stmt = select(ReportRecord).where(
            ReportRecord.category == category,
            ReportRecord.period_start == period.start,
            ReportRecord.period_end == period.end,
            ReportRecord.granularity == period.granularity.value,
        )
        try:
            async with self._session_scope() as session:
                await session.execute(insert_stmt)
                record = (await session.execute(select_stmt)).scalar_one()
                report = _record_to_report(record)
        except DBAPIError as exc:
            if _is_connection_error(exc):
                raise StoreUnavailable(str(exc)) from exc
            raise
        return report

    async def apply_indicator_update(
        self, report_id: str, compute_next: ComputeNext,
    ) -> Report:
        report = await self._optimistic(report_id, compute_next, event_id=None)
        assert report is not None
        return report

    async def apply_and_mark(
        self, report_id: str, compute_next: ComputeNext, event_id: str,
    ) -> Report | None:
        return await self._optimistic(report_id, compute_next, event_id=event_id)

    async def _optimistic(
        self,
        report_id: str,
        compute_next: ComputeNext,
        event_id: str | None,
    ) -> Report | None:
        rid = _parse_id(report_id)
        for attempt in range(1, self._max_retries + 1):
            try:
                async with self._session_scope() as session:
                    if event_id is not None and not await insert_ledger_entry(session, event_id):
                        return None
                    return await self._versioned_update(session, rid, compute_next)
            except _StaleVersion:
                logger.debug(
                    "Version conflict on report %s (attempt %d/%d)",
                    report_id, attempt, self._max_retries,
                )
            except DBAPIError as exc:
                if _is_connection_error(exc):
                    raise StoreUnavailable(str(exc)) from exc
                raise
        raise ConcurrencyConflict(report_id, self._max_retries)

    @staticmethod
    async def _versioned_update(
        session: AsyncSession, rid: uuid.UUID, compute_next: ComputeNext,
    ) -> Report:
        record = await session.scalar(
            select(ReportRecord)
            .where(ReportRecord.id == rid)
            .execution_options(populate_existing=True)
        )
        if record is None:
            raise ReportNotFoundError(str(rid))
        seen_version = record.version
        next_indicators = compute_next(copy.deepcopy(record.indicators or {}))
        now = utc_now()
        result = await session.execute(
            update(ReportRecord)
            .where(ReportRecord.id == rid, ReportRecord.version == seen_version)
            .values(
                indicators=next_indicators,
                version=seen_version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _StaleVersion()
        return _record_to_report(record).model_copy(
            update={
                "indicators": next_indicators,
                "version": seen_version + 1,
                "updated_at": now,
            }
        )

    # -- read side -------------------------------------------------------

    async def find_by_id(self, report_id: str) -> Report | None:
        try:
            rid = uuid.UUID(report_id)
        except (ValueError, TypeError):
            return None
        async with self._session_scope() as session:
            record = await session.get(ReportRecord, rid)
            return _record_to_report(record) if record else None

    async def find_by_filters(
        self,
        *,
        category: str | None = None,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
        status: ReportStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> ReportPage:
        stmt = select(ReportRecord)
        if category:
            stmt = stmt.where(ReportRecord.category == category)
        if status:
            stmt = stmt.where(ReportRecord.status == status.value)
        stmt = _period_filter(stmt, period_from, period_to)

        async with self._session_scope() as session:
            total = await session.scalar(
                select(func.count()).select_from(stmt.subquery())
            )
            records = (
                await session.execute(
                    stmt.order_by(ReportRecord.generated_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
            reports = [_record_to_report(r) for r in records]

        return ReportPage(
            data=reports,
            pagination=Pagination.build(page, limit, total or 0),
        )

    async def aggregated_metrics(
        self,
        *,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
    ) -> MetricsSummary:
        stmt = _period_filter(select(ReportRecord), period_from, period_to)
        summary = MetricsSummary()
        async with self._session_scope() as session:
            for record in (await session.execute(stmt)).scalars():
                summary.add(_record_to_report(record))
        return summary

    async def close(self) -> None:
        pass
