"""Core domain models used across the aggregation service.

These are the canonical "truth models" for the system: every backend
converts its records to and from these types.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .clock import as_utc, utc_now
from .enums import Granularity, PipelineOutcome, ReportStatus
from .errors import InvalidPeriodError


# ---------------------------------------------------------------------------
# Period
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Period:
    """Closed time interval ``[start, end]`` identifying a report bucket.

    Bounds are normalized to UTC on construction, so two periods built
    from the same instants compare (and hash) equal regardless of the
    zone they were expressed in.
    """

    start: datetime
    end: datetime
    granularity: Granularity = Granularity.DAILY

    def __post_init__(self) -> None:
        if self.start is None or self.end is None:
            raise InvalidPeriodError("Period start and end are required")
        start = as_utc(self.start)
        end = as_utc(self.end)
        if start > end:
            raise InvalidPeriodError(
                f"Period start must be before end: {start} > {end}"
            )
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def contains(self, instant: datetime) -> bool:
        t = as_utc(instant)
        return self.start <= t <= self.end

    def overlaps(self, other: Period) -> bool:
        return self.start <= other.end and self.end >= other.start

    def to_dict(self) -> dict[str, str]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "granularity": self.granularity.value,
        }


# ---------------------------------------------------------------------------
# Report (the per-bucket aggregate)
# ---------------------------------------------------------------------------

class Report(BaseModel):
    """Durable accumulator of indicators for one ``(category, period)``.

    ``version`` increases by one on every committed indicator update and
    backs optimistic concurrency in stores that need it.
    """

    id: str
    category: str
    period_start: datetime
    period_end: datetime
    granularity: Granularity = Granularity.DAILY
    indicators: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: ReportStatus = ReportStatus.GENERATED
    generated_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @property
    def period(self) -> Period:
        return Period(self.period_start, self.period_end, self.granularity)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerEntry:
    """Record that an event id has been applied."""

    event_id: str
    processed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class MarkResult:
    """Outcome of ``mark_processed``.

    ``applied`` is ``True`` exactly once per event id (within the
    retention window); every later call gets ``False``.
    """

    applied: bool


# ---------------------------------------------------------------------------
# Query side
# ---------------------------------------------------------------------------

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> Pagination:
        pages = math.ceil(total / limit) if limit > 0 else 0
        return cls(page=page, limit=limit, total=total, pages=pages)


class ReportPage(BaseModel):
    data: list[Report] = Field(default_factory=list)
    pagination: Pagination


class MetricsSummary(BaseModel):
    """Roll-up over many reports (numeric top-level indicators summed)."""

    total_reports: int = 0
    reports_by_category: dict[str, int] = Field(default_factory=dict)
    aggregated_indicators: dict[str, float] = Field(default_factory=dict)

    def add(self, report: Report) -> None:
        self.total_reports += 1
        self.reports_by_category[report.category] = (
            self.reports_by_category.get(report.category, 0) + 1
        )
        for key, value in report.indicators.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.aggregated_indicators[key] = (
                    self.aggregated_indicators.get(key, 0) + value
                )


# ---------------------------------------------------------------------------
# Pipeline result
# ---------------------------------------------------------------------------

class AggregationResult(BaseModel):
    """Structured outcome returned by ``AggregationPipeline.execute``."""

    success: bool
    outcome: PipelineOutcome
    reason: str | None = None
    report_id: str | None = None

    @classmethod
    def completed(cls, report_id: str) -> AggregationResult:
        return cls(success=True, outcome=PipelineOutcome.COMPLETE, report_id=report_id)

    @classmethod
    def no_event_id(cls) -> AggregationResult:
        return cls(
            success=False,
            outcome=PipelineOutcome.SKIPPED_NO_ID,
            reason="no_event_id",
        )

    @classmethod
    def duplicate(cls) -> AggregationResult:
        return cls(
            success=True,
            outcome=PipelineOutcome.SKIPPED_DUPLICATE,
            reason="already_processed",
        )
