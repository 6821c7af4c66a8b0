"""Protocol interfaces for the storage collaborators.

The pipeline only talks to these protocols.  Implementations can be
swapped (memory/postgres/redis) without changing callers, but each one
must honour the concurrency contract documented on the method.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from report_aggregator.core.enums import ReportStatus
from report_aggregator.core.models import (
    MarkResult,
    MetricsSummary,
    Period,
    Report,
    ReportPage,
)

ComputeNext = Callable[[Mapping[str, Any]], dict[str, Any]]


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------

@runtime_checkable
class IIdempotencyLedger(Protocol):
    """Durable set of applied event ids."""

    async def is_processed(self, event_id: str) -> bool:
        """Advisory read.  May be stale under concurrent writers."""
        ...

    async def mark_processed(self, event_id: str) -> MarkResult:
        """Atomic insert-if-absent.

        ``applied`` is ``True`` exactly once per id; duplicates return
        ``applied=False`` and never raise.

        Raises:
            InadmissibleEventError: If *event_id* is empty.
        """
        ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Aggregate store
# ---------------------------------------------------------------------------

@runtime_checkable
class IAggregateStore(Protocol):
    """Keyed store of reports, one per ``(category, period)``."""

    async def find_or_create(self, category: str, period: Period) -> Report:
        """Return the report for the key, creating it if absent.

        Concurrent callers with the same key all observe the same report.
        """
        ...

    async def apply_indicator_update(
        self, report_id: str, compute_next: ComputeNext,
    ) -> Report:
        """Apply *compute_next* to the latest indicators atomically.

        *compute_next* may be invoked more than once (optimistic retry)
        and must therefore be pure.

        Raises:
            ReportNotFoundError: If *report_id* does not exist.
            ConcurrencyConflict: If the update could not commit.
        """
        ...

    async def close(self) -> None: ...


@runtime_checkable
class IAtomicCommitter(Protocol):
    """Store that can record the ledger entry in the same unit of work."""

    @property
    def ledger(self) -> IIdempotencyLedger: ...

    async def apply_and_mark(
        self, report_id: str, compute_next: ComputeNext, event_id: str,
    ) -> Report | None:
        """Apply the update and mark *event_id* processed, all or nothing.

        Returns ``None`` (and changes nothing) if *event_id* was already
        marked.
        """
        ...


# ---------------------------------------------------------------------------
# Query side (read-only)
# ---------------------------------------------------------------------------

@runtime_checkable
class IReportReader(Protocol):

    async def find_by_id(self, report_id: str) -> Report | None: ...

    async def find_by_filters(
        self,
        *,
        category: str | None = None,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
        status: ReportStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> ReportPage: ...

    async def aggregated_metrics(
        self,
        *,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
    ) -> MetricsSummary: ...
