"""Process entry points: load config, wire the service, run until signalled."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta
from typing import Any

from .core.config import Settings, load_settings
from .core.enums import StorageBackend
from .core.errors import ConfigError
from .core.clock import utc_now
from .observability.logger import setup_logging
from .observability.metrics import (
    MetricsSink,
    NullMetricsSink,
    PrometheusMetricsSink,
    start_metrics_server,
)
from .service import AggregatorService

logger = logging.getLogger(__name__)


def _prepare(
    config_path: str | None, overrides: dict[str, Any] | None,
) -> Settings:
    settings = load_settings(config_path=config_path, overrides=overrides)
    settings.validate_settings()
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
    return settings


async def run(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Main entry point. Load config, wire modules, consume until SIGTERM."""
    settings = _prepare(config_path, overrides)
    logger.info(
        "Starting report-aggregator",
        extra={
            "bus": settings.bus.backend.value,
            "storage": settings.storage.backend.value,
            "ledger": settings.storage.ledger_backend.value,
            "subjects": settings.bus.subjects,
        },
    )

    metrics: MetricsSink = NullMetricsSink()
    if settings.observability.metrics_enabled:
        try:
            start_metrics_server(port=settings.observability.metrics_port)
            metrics = PrometheusMetricsSink()
        except OSError:
            logger.warning("Failed to start metrics server", exc_info=True)

    service = await AggregatorService.create(settings, metrics=metrics)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        await service.start()
        await stop_event.wait()
    finally:
        await service.stop()


async def init_db(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Create the reports and events_inbox tables if missing."""
    settings = _prepare(config_path, overrides)
    if settings.storage.backend != StorageBackend.POSTGRES:
        raise ConfigError("init-db requires storage.backend = postgres")

    from .storage.postgres.connection import ReportDatabase

    database = ReportDatabase(settings.storage.postgres_url, use_null_pool=True)
    try:
        await database.create_schema()
    finally:
        await database.dispose()


async def prune_ledger(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    retention_days: int | None = None,
) -> int:
    """Delete ledger entries older than the retention window.

    Redeliveries of pruned events are no longer recognised as duplicates.
    """
    settings = _prepare(config_path, overrides)
    if settings.storage.backend != StorageBackend.POSTGRES:
        raise ConfigError("prune-ledger requires storage.backend = postgres")

    from .storage.postgres.connection import ReportDatabase
    from .storage.postgres.repos import PostgresLedger

    days = retention_days if retention_days is not None else settings.storage.ledger_retention_days
    cutoff = utc_now() - timedelta(days=days)

    database = ReportDatabase(settings.storage.postgres_url, use_null_pool=True)
    try:
        return await PostgresLedger(database.session).prune(cutoff)
    finally:
        await database.dispose()
