"""In-memory reference implementations of the storage contracts.

No persistence across restarts.  Good for: unit tests, the
``memory`` bus backend, and local development.

Concurrency model: everything runs on one asyncio event loop, so any
block of code without an ``await`` is atomic.  Read-modify-write on a
report awaits between read and write (to behave like real I/O), so each
report has its own :class:`asyncio.Lock`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from datetime import datetime

from report_aggregator.core.clock import IClock, WallClock, as_utc
from report_aggregator.core.enums import Granularity, ReportStatus
from report_aggregator.core.errors import InadmissibleEventError, ReportNotFoundError
from report_aggregator.core.models import (
    LedgerEntry,
    MarkResult,
    MetricsSummary,
    Pagination,
    Period,
    Report,
    ReportPage,
)

from .interfaces import ComputeNext

logger = logging.getLogger(__name__)

_ReportKey = tuple[str, datetime, datetime, Granularity]


def _key(category: str, period: Period) -> _ReportKey:
    return (category, period.start, period.end, period.granularity)


def _in_range(
    instant: datetime, period_from: datetime | None, period_to: datetime | None,
) -> bool:
    if period_from is not None and instant < as_utc(period_from):
        return False
    if period_to is not None and instant > as_utc(period_to):
        return False
    return True


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class InMemoryLedger:
    """Dict-backed idempotency ledger."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._entries: dict[str, LedgerEntry] = {}

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self._entries

    async def mark_processed(self, event_id: str) -> MarkResult:
        return MarkResult(applied=self.try_mark(event_id))

    def try_mark(self, event_id: str) -> bool:
        """Synchronous insert-if-absent.  Atomic on the event loop."""
        if not event_id or not event_id.strip():
            raise InadmissibleEventError("Cannot ledger an event without id")
        if event_id in self._entries:
            return False
        self._entries[event_id] = LedgerEntry(
            event_id=event_id, processed_at=self._clock.now(),
        )
        return True

    async def prune(self, older_than: datetime) -> int:
        """Drop entries processed before *older_than*.  Returns the count."""
        older_than = as_utc(older_than)
        stale = [
            eid for eid, entry in self._entries.items()
            if entry.processed_at < older_than
        ]
        for eid in stale:
            del self._entries[eid]
        if stale:
            logger.info("Pruned %d ledger entries older than %s", len(stale), older_than)
        return len(stale)

    def get(self, event_id: str) -> LedgerEntry | None:
        return self._entries.get(event_id)

    async def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Aggregate store
# ---------------------------------------------------------------------------

class InMemoryAggregateStore:
    """Dict-backed report store enforcing one report per key.

    Args:
        ledger: Optional ledger sharing this store's unit of work.  When
            given, :meth:`apply_and_mark` commits the indicator update
            and the ledger entry together.
        clock: Time source for ``generated_at`` / ``updated_at``.
    """

    def __init__(
        self,
        ledger: InMemoryLedger | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._ledger = ledger
        self._clock = clock or WallClock()
        self._reports: dict[str, Report] = {}
        self._by_key: dict[_ReportKey, str] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def ledger(self) -> InMemoryLedger | None:
        return self._ledger

    # -- write side ------------------------------------------------------

    async def find_or_create(self, category: str, period: Period) -> Report:
        key = _key(category, period)
        report_id = self._by_key.get(key)
        if report_id is None:
            now = self._clock.now()
            report = Report(
                id=str(uuid.uuid4()),
                category=category,
                period_start=period.start,
                period_end=period.end,
                granularity=period.granularity,
                metadata={"createdBy": "aggregator"},
                status=ReportStatus.GENERATED,
                generated_at=now,
                updated_at=now,
            )
            self._reports[report.id] = report
            self._by_key[key] = report.id
            report_id = report.id
            logger.debug("Created report %s for %s %s", report_id, category, period.start)
        return self._reports[report_id].model_copy(deep=True)

    async def apply_indicator_update(
        self, report_id: str, compute_next: ComputeNext,
    ) -> Report:
        async with self._locks[report_id]:
            updated = await self._compute(report_id, compute_next)
            self._reports[report_id] = updated
        return updated.model_copy(deep=True)

    async def apply_and_mark(
        self, report_id: str, compute_next: ComputeNext, event_id: str,
    ) -> Report | None:
        if self._ledger is None:
            raise RuntimeError("InMemoryAggregateStore has no ledger attached")
        async with self._locks[report_id]:
            if await self._ledger.is_processed(event_id):
                return None
            updated = await self._compute(report_id, compute_next)
            # No await between the two writes: they land together.
            if not self._ledger.try_mark(event_id):
                return None
            self._reports[report_id] = updated
        return updated.model_copy(deep=True)

    async def _compute(self, report_id: str, compute_next: ComputeNext) -> Report:
        current = self._reports.get(report_id)
        if current is None:
            raise ReportNotFoundError(report_id)
        next_indicators = compute_next(copy.deepcopy(current.indicators))
        await asyncio.sleep(0)  # Simulated I/O between read and write
        return current.model_copy(
            update={
                "indicators": next_indicators,
                "version": current.version + 1,
                "updated_at": self._clock.now(),
            },
            deep=True,
        )

    # -- read side -------------------------------------------------------

    async def find_by_id(self, report_id: str) -> Report | None:
        report = self._reports.get(report_id)
        return report.model_copy(deep=True) if report else None

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
        matches = [
            r for r in self._reports.values()
            if (category is None or r.category == category)
            and (status is None or r.status == status)
            and _in_range(r.period_start, period_from, period_to)
        ]
        matches.sort(key=lambda r: r.generated_at, reverse=True)
        offset = (page - 1) * limit
        return ReportPage(
            data=[r.model_copy(deep=True) for r in matches[offset:offset + limit]],
            pagination=Pagination.build(page, limit, len(matches)),
        )

    async def aggregated_metrics(
        self,
        *,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
    ) -> MetricsSummary:
        summary = MetricsSummary()
        for report in self._reports.values():
            if _in_range(report.period_start, period_from, period_to):
                summary.add(report)
        return summary

    async def close(self) -> None:
        pass

    # -- Testing helpers -------------------------------------------------

    def clear(self) -> None:
        """Remove all reports.  Testing only."""
        self._reports.clear()
        self._by_key.clear()
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._reports)
