"""Tests for AggregationPipeline."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from report_aggregator.aggregation.pipeline import AggregationPipeline
from report_aggregator.aggregation.strategies import (
    StrategyRegistryBuilder,
    default_registry,
)
from report_aggregator.core.enums import Granularity, PipelineOutcome
from report_aggregator.core.errors import (
    LedgerUnavailable,
    ReducerFault,
    StoreUnavailable,
)
from report_aggregator.storage.memory import InMemoryAggregateStore, InMemoryLedger

UTC = timezone.utc


def _order(event_id: str, timestamp: str, total: float = 100) -> dict:
    return {
        "id": event_id,
        "category": "orders.created",
        "timestamp": timestamp,
        "payload": {"total": total},
    }


async def _only_report(store):
    page = await store.find_by_filters(limit=100)
    assert len(page.data) == 1
    return page.data[0]


class TestHappyPath:
    async def test_first_order_creates_daily_report(
        self, pipeline, store, ledger, order_created_event,
    ):
        result = await pipeline.execute(order_created_event, "orders.created")

        assert result.success
        assert result.outcome == PipelineOutcome.COMPLETE
        report = await store.find_by_id(result.report_id)
        assert report.category == "orders"
        assert report.period_start == datetime(2023, 11, 8, tzinfo=UTC)
        assert report.period_end == datetime(2023, 11, 8, 23, 59, 59, 999999, tzinfo=UTC)
        assert report.indicators["totalOrders"] == 1
        assert report.indicators["totalOrderValue"] == 100
        assert await ledger.is_processed("e1")

    async def test_duplicate_is_skipped(self, pipeline, store, order_created_event):
        await pipeline.execute(order_created_event, "orders.created")
        again = await pipeline.execute(order_created_event, "orders.created")

        assert again.success
        assert again.outcome == PipelineOutcome.SKIPPED_DUPLICATE
        assert again.reason == "already_processed"
        report = await _only_report(store)
        assert report.indicators["totalOrders"] == 1
        assert report.indicators["totalOrderValue"] == 100

    async def test_same_day_folds_into_one_report(self, pipeline, store):
        await pipeline.execute(_order("e1", "2023-11-08T01:00:00Z", 10), "orders.created")
        await pipeline.execute(_order("e2", "2023-11-08T22:00:00Z", 15), "orders.created")

        report = await _only_report(store)
        assert report.indicators["totalOrders"] == 2
        assert report.indicators["totalOrderValue"] == 25
        assert report.version == 2

    async def test_different_days_get_different_reports(self, pipeline, store):
        a = await pipeline.execute(_order("e1", "2023-11-08T12:00:00Z"), "orders.created")
        b = await pipeline.execute(_order("e2", "2023-11-09T12:00:00Z"), "orders.created")

        assert a.report_id != b.report_id
        assert len(store) == 2
        for result in (a, b):
            report = await store.find_by_id(result.report_id)
            assert report.indicators["totalOrders"] == 1

    async def test_unregistered_key_uses_counting_rule(self, pipeline, store):
        result = await pipeline.execute(
            {"id": "p1", "timestamp": "2023-11-08T12:00:00Z"}, "payments.captured",
        )
        report = await store.find_by_id(result.report_id)
        assert report.category == "general"
        assert report.indicators == {
            "totalEvents": 1,
            "eventCounts": {"payments.captured": 1},
        }

    async def test_missing_timestamp_uses_arrival(self, pipeline, store, sim_clock):
        result = await pipeline.execute({"id": "e1"}, "orders.created")
        report = await store.find_by_id(result.report_id)
        assert report.period.contains(sim_clock.now())

    async def test_malformed_timestamp_uses_arrival(self, pipeline, store, sim_clock):
        result = await pipeline.execute(
            {"id": "e1", "timestamp": "soon"}, "orders.created",
        )
        assert result.success
        report = await store.find_by_id(result.report_id)
        assert report.period.contains(sim_clock.now())

    async def test_far_future_timestamp_is_bucketed(self, pipeline, store):
        result = await pipeline.execute(
            _order("e1", "9999-12-31T23:00:00Z"), "orders.created",
        )
        assert result.success
        report = await store.find_by_id(result.report_id)
        assert report.period_end == datetime.max.replace(tzinfo=UTC)

    async def test_far_past_timestamp_is_bucketed(self, ledger, store, registry, sim_clock):
        pipeline = AggregationPipeline(
            ledger, store, registry,
            clock=sim_clock,
            tz=ZoneInfo("America/New_York"),
        )
        result = await pipeline.execute(
            _order("e1", "0001-01-01T01:00:00Z"), "orders.created",
        )
        assert result.success
        report = await store.find_by_id(result.report_id)
        assert report.period.contains(datetime(1, 1, 1, 1, tzinfo=UTC))

    async def test_hourly_granularity_and_zone(self, ledger, store, registry, sim_clock):
        pipeline = AggregationPipeline(
            ledger, store, registry,
            clock=sim_clock,
            granularity=Granularity.HOURLY,
            tz=ZoneInfo("Asia/Kolkata"),
        )
        result = await pipeline.execute(
            _order("e1", "2023-11-08T12:10:00Z"), "orders.created",
        )
        report = await store.find_by_id(result.report_id)
        # Kolkata is UTC+05:30, so local hours start at :30 UTC.
        assert report.period_start == datetime(2023, 11, 8, 11, 30, tzinfo=UTC)
        assert report.granularity == Granularity.HOURLY


class TestSkips:
    @pytest.mark.parametrize("event", [{}, {"id": ""}, {"id": None}, {"id": "  "}])
    async def test_missing_id_touches_nothing(self, pipeline, store, ledger, metrics, event):
        result = await pipeline.execute(event, "orders.created")

        assert not result.success
        assert result.outcome == PipelineOutcome.SKIPPED_NO_ID
        assert result.reason == "no_event_id"
        assert len(store) == 0
        assert len(ledger) == 0
        assert metrics.counters == [
            ("events_skipped", {"event_type": "orders.created", "reason": "no_event_id"}),
        ]


class TestFailures:
    async def test_reducer_fault_leaves_event_unmarked(self, ledger, store, sim_clock):
        calls = {"n": 0}

        def flaky(event, current):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ZeroDivisionError("bad reducer")
            return {**current, "ok": True}

        registry = StrategyRegistryBuilder().register("orders.created", flaky).build()
        pipeline = AggregationPipeline(ledger, store, registry, clock=sim_clock)
        event = _order("e1", "2023-11-08T12:00:00Z")

        with pytest.raises(ReducerFault):
            await pipeline.execute(event, "orders.created")
        assert not await ledger.is_processed("e1")
        report = await _only_report(store)
        assert report.indicators == {}

        # Redelivery after the fault succeeds exactly once.
        result = await pipeline.execute(event, "orders.created")
        assert result.outcome == PipelineOutcome.COMPLETE
        assert (await _only_report(store)).indicators == {"ok": True}

    async def test_store_timeout_becomes_unavailable(self, ledger, registry, sim_clock):
        class SlowStore(InMemoryAggregateStore):
            async def find_or_create(self, category, period):
                await asyncio.sleep(1)
                return await super().find_or_create(category, period)

        store = SlowStore(ledger=ledger, clock=sim_clock)
        pipeline = AggregationPipeline(
            ledger, store, registry, clock=sim_clock, operation_timeout=0.01,
        )
        with pytest.raises(StoreUnavailable):
            await pipeline.execute(_order("e1", "2023-11-08T12:00:00Z"), "orders.created")
        assert not await ledger.is_processed("e1")

    async def test_ledger_os_error_becomes_unavailable(self, store, registry, sim_clock):
        class BrokenLedger(InMemoryLedger):
            async def is_processed(self, event_id):
                raise ConnectionRefusedError("ledger down")

        pipeline = AggregationPipeline(
            BrokenLedger(clock=sim_clock), store, registry, clock=sim_clock,
        )
        with pytest.raises(LedgerUnavailable):
            await pipeline.execute(_order("e1", "2023-11-08T12:00:00Z"), "orders.created")
        assert len(store) == 0


class TestCommitPaths:
    def test_shared_ledger_is_atomic(self, pipeline):
        assert pipeline.atomic_commit

    async def test_separate_ledger_marks_last(self, registry, sim_clock):
        store = InMemoryAggregateStore(clock=sim_clock)
        ledger = InMemoryLedger(clock=sim_clock)
        pipeline = AggregationPipeline(ledger, store, registry, clock=sim_clock)
        assert not pipeline.atomic_commit

        event = _order("e1", "2023-11-08T12:00:00Z")
        await pipeline.execute(event, "orders.created")
        again = await pipeline.execute(event, "orders.created")

        assert again.outcome == PipelineOutcome.SKIPPED_DUPLICATE
        assert await ledger.is_processed("e1")
        assert (await _only_report(store)).indicators["totalOrders"] == 1

    async def test_mark_last_failure_leaves_event_unmarked(self, registry, sim_clock):
        class FailingStore(InMemoryAggregateStore):
            async def apply_indicator_update(self, report_id, compute_next):
                raise StoreUnavailable("write failed")

        ledger = InMemoryLedger(clock=sim_clock)
        pipeline = AggregationPipeline(
            ledger, FailingStore(clock=sim_clock), registry, clock=sim_clock,
        )
        with pytest.raises(StoreUnavailable):
            await pipeline.execute(_order("e1", "2023-11-08T12:00:00Z"), "orders.created")
        assert not await ledger.is_processed("e1")

    async def test_concurrent_duplicates_apply_once(self, pipeline, store):
        event = _order("race", "2023-11-08T12:00:00Z")
        results = await asyncio.gather(
            *(pipeline.execute(event, "orders.created") for _ in range(10))
        )
        outcomes = [r.outcome for r in results]
        assert outcomes.count(PipelineOutcome.COMPLETE) == 1
        assert outcomes.count(PipelineOutcome.SKIPPED_DUPLICATE) == 9
        assert (await _only_report(store)).indicators["totalOrders"] == 1

    async def test_concurrent_distinct_events_all_counted(self, pipeline, store):
        await asyncio.gather(*(
            pipeline.execute(_order(f"e{i}", "2023-11-08T12:00:00Z", 2), "orders.created")
            for i in range(40)
        ))
        report = await _only_report(store)
        assert report.indicators["totalOrders"] == 40
        assert report.indicators["totalOrderValue"] == 80


class TestMetrics:
    async def test_processed_and_duration_recorded(self, pipeline, metrics, order_created_event):
        await pipeline.execute(order_created_event, "orders.created")
        await pipeline.execute(order_created_event, "orders.created")

        assert metrics.count("events_processed") == 1
        assert metrics.count("events_skipped") == 1
        assert ("events_skipped", {
            "event_type": "orders.created", "reason": "already_processed",
        }) in metrics.counters
        [(name, duration, labels)] = metrics.histograms
        assert name == "aggregation_duration"
        assert duration >= 0
        assert labels == {"event_type": "orders.created"}

    async def test_default_registry_without_metrics_sink(self, ledger, store, sim_clock):
        pipeline = AggregationPipeline(ledger, store, default_registry(), clock=sim_clock)
        result = await pipeline.execute(
            _order("e1", "2023-11-08T12:00:00Z"), "orders.created",
        )
        assert result.success
