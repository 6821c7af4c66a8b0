"""Prometheus metrics.

The pipeline reports through the small :class:`MetricsSink` protocol
(``increment_counter`` / ``record_histogram`` by name) so that metrics
stay observational: a sink can never change an aggregation outcome.
"""

from __future__ import annotations

import logging
from typing import Protocol

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Aggregation metrics
# ---------------------------------------------------------------------------

EVENTS_PROCESSED = Counter(
    "aggregator_events_processed_total",
    "Events folded into a report",
    ["event_type"],
)

EVENTS_SKIPPED = Counter(
    "aggregator_events_skipped_total",
    "Events skipped (duplicate or inadmissible)",
    ["event_type", "reason"],
)

AGGREGATION_DURATION = Histogram(
    "aggregator_aggregation_duration_seconds",
    "Time to fold one event, from receipt to commit",
    ["event_type"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

_COUNTERS = {
    "events_processed": EVENTS_PROCESSED,
    "events_skipped": EVENTS_SKIPPED,
}

_HISTOGRAMS = {
    "aggregation_duration": AGGREGATION_DURATION,
}


class MetricsSink(Protocol):
    def increment_counter(self, name: str, labels: dict[str, str]) -> None: ...

    def record_histogram(
        self, name: str, value: float, labels: dict[str, str],
    ) -> None: ...


class PrometheusMetricsSink:
    """Routes named metrics to the module-level Prometheus collectors."""

    def increment_counter(self, name: str, labels: dict[str, str]) -> None:
        counter = _COUNTERS.get(name)
        if counter is None:
            logger.warning("Unknown counter metric: %s", name)
            return
        try:
            counter.labels(**labels).inc()
        except ValueError:
            logger.warning("Bad labels for %s: %s", name, labels, exc_info=True)

    def record_histogram(
        self, name: str, value: float, labels: dict[str, str],
    ) -> None:
        histogram = _HISTOGRAMS.get(name)
        if histogram is None:
            logger.warning("Unknown histogram metric: %s", name)
            return
        try:
            histogram.labels(**labels).observe(value)
        except ValueError:
            logger.warning("Bad labels for %s: %s", name, labels, exc_info=True)


class NullMetricsSink:
    """Discards everything."""

    def increment_counter(self, name: str, labels: dict[str, str]) -> None:
        pass

    def record_histogram(
        self, name: str, value: float, labels: dict[str, str],
    ) -> None:
        pass


class RecordingMetricsSink:
    """Keeps every call in memory.  For tests."""

    def __init__(self) -> None:
        self.counters: list[tuple[str, dict[str, str]]] = []
        self.histograms: list[tuple[str, float, dict[str, str]]] = []

    def increment_counter(self, name: str, labels: dict[str, str]) -> None:
        self.counters.append((name, dict(labels)))

    def record_histogram(
        self, name: str, value: float, labels: dict[str, str],
    ) -> None:
        self.histograms.append((name, value, dict(labels)))

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.counters if n == name)


def start_metrics_server(port: int = 9090) -> None:
    """Start the Prometheus HTTP server on *port*."""
    start_http_server(port)
    logger.info("Prometheus metrics server started on port %d", port)
