"""Per-event aggregation pipeline.

``AggregationPipeline.execute`` walks one event through a linear state
machine with short-circuit exits::

    RECEIVED -> (no id: SKIPPED_NO_ID)
             -> DEDUP_CHECKED -> (seen: SKIPPED_DUPLICATE)
             -> PERIOD_RESOLVED -> AGGREGATE_RESOLVED
             -> INDICATORS_COMPUTED -> COMMITTED -> COMPLETE

Correctness under at-least-once delivery rests on the collaborators, not
on the pipeline: the ledger's insert-if-absent is the only gate on
single application, and the store's atomic update is what makes
concurrent writers to one report converge.  The pipeline holds no
mutable shared state and performs no retries; infrastructure failures
propagate so the bus leaves the message unacknowledged.

Commit ordering
---------------
If the store can record the ledger entry in the same unit of work as
the indicator update (:class:`IAtomicCommitter` sharing this pipeline's
ledger), both land together.  Otherwise the indicator update is applied
first and the ledger is marked last, so a crash in between leaves the
event unmarked and a redelivery retries it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Mapping
from datetime import timezone, tzinfo
from typing import Any, TypeVar

from report_aggregator.core.clock import IClock, WallClock
from report_aggregator.core.enums import Granularity, PipelineStage
from report_aggregator.core.errors import (
    InfrastructureError,
    LedgerUnavailable,
    StoreUnavailable,
)
from report_aggregator.core.events import InboundEvent
from report_aggregator.core.models import AggregationResult, Report
from report_aggregator.observability.logger import bind_event_context
from report_aggregator.observability.metrics import MetricsSink, NullMetricsSink
from report_aggregator.storage.interfaces import (
    IAggregateStore,
    IAtomicCommitter,
    IIdempotencyLedger,
)

from .period import resolve_period
from .routing import category_for
from .strategies import Indicators, StrategyRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AggregationPipeline:
    """Folds bus events into per-(category, period) reports.

    Args:
        ledger: Idempotency ledger.
        store: Report store.
        registry: Frozen reducer table.
        clock: Arrival-time source for events without a usable timestamp.
        metrics: Observational sink for counters and durations.
        tz: Zone in which bucket boundaries are computed.
        granularity: Bucket width.
        operation_timeout: Seconds allowed per ledger/store call;
            ``None`` disables the bound.
    """

    def __init__(
        self,
        ledger: IIdempotencyLedger,
        store: IAggregateStore,
        registry: StrategyRegistry,
        *,
        clock: IClock | None = None,
        metrics: MetricsSink | None = None,
        tz: tzinfo = timezone.utc,
        granularity: Granularity = Granularity.DAILY,
        operation_timeout: float | None = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._registry = registry
        self._clock = clock or WallClock()
        self._metrics = metrics or NullMetricsSink()
        self._tz = tz
        self._granularity = granularity
        self._timeout = operation_timeout
        self._atomic = (
            isinstance(store, IAtomicCommitter)
            and getattr(store, "ledger", None) is ledger
        )
        logger.info(
            "Aggregation pipeline ready (commit=%s)",
            "atomic" if self._atomic else "mark-last",
        )

    @property
    def atomic_commit(self) -> bool:
        return self._atomic

    async def execute(
        self,
        event: InboundEvent | Mapping[str, Any],
        routing_key: str,
    ) -> AggregationResult:
        """Fold one delivered event into its report.

        Returns:
            :class:`AggregationResult`; duplicates and id-less events are
            outcomes, not errors.

        Raises:
            ReducerFault: The reducer raised; the event is not marked.
            StoreUnavailable: The store failed or timed out.
            LedgerUnavailable: The ledger failed or timed out.
        """
        if not isinstance(event, InboundEvent):
            event = InboundEvent.model_validate(event)

        with bind_event_context(event_id=event.id, routing_key=routing_key):
            started = time.monotonic()
            stage = PipelineStage.RECEIVED
            try:
                if not event.has_id:
                    logger.warning("Event without id received, skipping")
                    self._skipped(routing_key, "no_event_id")
                    return AggregationResult.no_event_id()

                event_id = event.id
                assert event_id is not None
                seen = await self._call(
                    self._ledger.is_processed(event_id), LedgerUnavailable,
                )
                stage = PipelineStage.DEDUP_CHECKED
                if seen:
                    logger.debug("Event already processed (idempotent)")
                    self._skipped(routing_key, "already_processed")
                    return AggregationResult.duplicate()

                period = resolve_period(
                    event.occurred_at(self._clock.now()), self._granularity, self._tz,
                )
                stage = PipelineStage.PERIOD_RESOLVED

                category = category_for(routing_key)
                report = await self._call(
                    self._store.find_or_create(category, period), StoreUnavailable,
                )
                stage = PipelineStage.AGGREGATE_RESOLVED

                def compute_next(current: Mapping[str, Any]) -> Indicators:
                    nonlocal stage
                    indicators = self._registry.aggregate(routing_key, event, current)
                    stage = PipelineStage.INDICATORS_COMPUTED
                    return indicators

                committed = await self._commit(report.id, event_id, compute_next)
                if committed is None:
                    logger.info("Duplicate lost the commit race, skipping")
                    self._skipped(routing_key, "already_processed")
                    return AggregationResult.duplicate()
                stage = PipelineStage.COMMITTED

            except Exception:
                logger.exception("Aggregation failed at stage %s", stage.value)
                raise

            duration = time.monotonic() - started
            self._metrics.increment_counter(
                "events_processed", {"event_type": routing_key},
            )
            self._metrics.record_histogram(
                "aggregation_duration", duration, {"event_type": routing_key},
            )
            logger.info(
                "Event aggregated into report %s (%s, %s)",
                committed.id,
                category,
                period.start.date().isoformat(),
                extra={"duration_ms": round(duration * 1000, 3)},
            )
            return AggregationResult.completed(committed.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _commit(
        self, report_id: str, event_id: str, compute_next: Any,
    ) -> Report | None:
        if self._atomic:
            return await self._call(
                self._store.apply_and_mark(report_id, compute_next, event_id),  # type: ignore[attr-defined]
                StoreUnavailable,
            )

        report = await self._call(
            self._store.apply_indicator_update(report_id, compute_next),
            StoreUnavailable,
        )
        mark = await self._call(
            self._ledger.mark_processed(event_id), LedgerUnavailable,
        )
        if not mark.applied:
            # Two deliveries passed the fast-path check concurrently.
            logger.warning(
                "Event %s was marked by a concurrent delivery after update",
                event_id,
            )
        return report

    async def _call(
        self,
        awaitable: Awaitable[T],
        unavailable: type[InfrastructureError],
    ) -> T:
        try:
            if self._timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, self._timeout)
        except InfrastructureError:
            raise
        except asyncio.TimeoutError as exc:
            raise unavailable(
                f"{unavailable.__name__}: no response within {self._timeout}s"
            ) from exc
        except OSError as exc:
            raise unavailable(f"{unavailable.__name__}: {exc}") from exc

    def _skipped(self, routing_key: str, reason: str) -> None:
        self._metrics.increment_counter(
            "events_skipped", {"event_type": routing_key, "reason": reason},
        )
