"""Read-only query side over stored reports.

Lists reports with filters and pagination, and rolls numeric indicators
up across many reports.  Never writes.
"""

from __future__ import annotations

import logging
from datetime import datetime

from report_aggregator.core.enums import ReportStatus
from report_aggregator.core.models import MetricsSummary, Report, ReportPage
from report_aggregator.storage.interfaces import IReportReader

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ReportQueryService:
    def __init__(self, reader: IReportReader) -> None:
        self._reader = reader

    async def get_report(self, report_id: str) -> Report | None:
        return await self._reader.find_by_id(report_id)

    async def list_reports(
        self,
        *,
        category: str | None = None,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
        status: ReportStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> ReportPage:
        """Page through reports, newest ``generated_at`` first.

        ``page`` is clamped to at least 1 and ``limit`` to
        ``[1, MAX_PAGE_SIZE]``.
        """
        page = max(1, int(page))
        limit = min(max(1, int(limit)), MAX_PAGE_SIZE)
        result = await self._reader.find_by_filters(
            category=category,
            period_from=period_from,
            period_to=period_to,
            status=status,
            page=page,
            limit=limit,
        )
        logger.info(
            "Reports queried: category=%s count=%d total=%d",
            category, len(result.data), result.pagination.total,
        )
        return result

    async def metrics(
        self,
        *,
        period_from: datetime | None = None,
        period_to: datetime | None = None,
    ) -> MetricsSummary:
        summary = await self._reader.aggregated_metrics(
            period_from=period_from, period_to=period_to,
        )
        logger.info("Metrics queried: total_reports=%d", summary.total_reports)
        return summary
