"""Shared fixtures for the report-aggregator test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from report_aggregator.aggregation.pipeline import AggregationPipeline
from report_aggregator.aggregation.strategies import StrategyRegistry, default_registry
from report_aggregator.bus.memory_bus import MemoryEventBus
from report_aggregator.core.clock import SimClock
from report_aggregator.core.events import InboundEvent
from report_aggregator.observability.metrics import RecordingMetricsSink
from report_aggregator.storage.memory import InMemoryAggregateStore, InMemoryLedger


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock starting at 2023-11-08 09:30 UTC."""
    return SimClock(start=datetime(2023, 11, 8, 9, 30, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger(sim_clock) -> InMemoryLedger:
    return InMemoryLedger(clock=sim_clock)


@pytest.fixture
def store(ledger, sim_clock) -> InMemoryAggregateStore:
    """Store sharing ``ledger`` (atomic commit path)."""
    return InMemoryAggregateStore(ledger=ledger, clock=sim_clock)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> StrategyRegistry:
    return default_registry()


@pytest.fixture
def metrics() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture
def pipeline(ledger, store, registry, sim_clock, metrics) -> AggregationPipeline:
    return AggregationPipeline(
        ledger, store, registry, clock=sim_clock, metrics=metrics,
    )


@pytest.fixture
def memory_bus() -> MemoryEventBus:
    """Return a fresh MemoryEventBus instance."""
    return MemoryEventBus()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@pytest.fixture
def order_created_event() -> InboundEvent:
    """The ``e1`` order from the reference scenario."""
    return InboundEvent.model_validate({
        "id": "e1",
        "category": "orders.created",
        "timestamp": "2023-11-08T12:00:00Z",
        "payload": {"total": 100},
    })
