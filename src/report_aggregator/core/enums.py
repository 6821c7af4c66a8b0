"""Enumerations used across the aggregation service."""

from enum import Enum


class BusBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"


class LedgerBackend(str, Enum):
    STORE = "store"  # Same database as the reports (atomic commit)
    REDIS = "redis"


class Granularity(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"


class ReportStatus(str, Enum):
    GENERATED = "generated"


class PipelineStage(str, Enum):
    """Per-event pipeline states, in the order they are reached."""

    RECEIVED = "received"
    DEDUP_CHECKED = "dedup_checked"
    PERIOD_RESOLVED = "period_resolved"
    AGGREGATE_RESOLVED = "aggregate_resolved"
    INDICATORS_COMPUTED = "indicators_computed"
    COMMITTED = "committed"
    COMPLETE = "complete"


class PipelineOutcome(str, Enum):
    """Terminal states of a single pipeline invocation."""

    COMPLETE = "complete"
    SKIPPED_NO_ID = "skipped_no_id"
    SKIPPED_DUPLICATE = "skipped_duplicate"
