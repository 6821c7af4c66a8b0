"""Service assembly: storage, registry, pipeline and bus wiring.

:class:`AggregatorService` owns the lifecycle of every collaborator.
Shutdown order matters: the bus is stopped first (no new pulls, in-flight
events run to a terminal state), and only then are the store and ledger
connections released.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from report_aggregator.aggregation.pipeline import AggregationPipeline
from report_aggregator.aggregation.strategies import StrategyRegistry, default_registry
from report_aggregator.bus import create_event_bus
from report_aggregator.bus.memory_bus import MemoryEventBus
from report_aggregator.bus.redis_streams import RedisStreamsBus
from report_aggregator.core.clock import IClock
from report_aggregator.core.config import Settings
from report_aggregator.core.enums import LedgerBackend, StorageBackend
from report_aggregator.core.events import InboundEvent
from report_aggregator.observability.metrics import MetricsSink, NullMetricsSink
from report_aggregator.storage.interfaces import IAggregateStore, IIdempotencyLedger
from report_aggregator.storage.memory import InMemoryAggregateStore, InMemoryLedger

if TYPE_CHECKING:
    from report_aggregator.storage.postgres.connection import ReportDatabase

logger = logging.getLogger(__name__)


async def build_storage(
    settings: Settings, clock: IClock | None = None,
) -> tuple[IAggregateStore, IIdempotencyLedger, ReportDatabase | None]:
    """Create (and connect) the configured store and ledger.

    Returns the store, the ledger and, for PostgreSQL, the database whose
    engine the caller must dispose.
    """
    cfg = settings.storage
    store: Any
    database: ReportDatabase | None = None
    if cfg.backend == StorageBackend.POSTGRES:
        from report_aggregator.storage.postgres.connection import ReportDatabase
        from report_aggregator.storage.postgres.repos import PostgresReportStore

        database = ReportDatabase(
            cfg.postgres_url,
            pool_size=cfg.pool_size,
            max_overflow=cfg.max_overflow,
        )
        if cfg.create_tables:
            await database.create_schema()
        store = PostgresReportStore(
            database.session, max_update_retries=cfg.max_update_retries,
        )
        ledger: Any = store.ledger
    else:
        ledger = InMemoryLedger(clock=clock)
        store = InMemoryAggregateStore(ledger=ledger, clock=clock)

    if cfg.ledger_backend == LedgerBackend.REDIS:
        from report_aggregator.storage.redis_ledger import RedisIdempotencyLedger

        ledger = RedisIdempotencyLedger(
            cfg.ledger_redis_url,
            prefix=cfg.ledger_key_prefix,
            retention_seconds=cfg.ledger_retention_days * 24 * 3600,
        )
        await ledger.connect()

    return store, ledger, database


class AggregatorService:
    """Consumes bus events and feeds them through the pipeline."""

    def __init__(
        self,
        settings: Settings,
        pipeline: AggregationPipeline,
        bus: MemoryEventBus | RedisStreamsBus,
        store: IAggregateStore,
        ledger: IIdempotencyLedger,
        database: ReportDatabase | None = None,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.bus = bus
        self.store = store
        self.ledger = ledger
        self.database = database
        self._started = False

    @classmethod
    async def create(
        cls,
        settings: Settings,
        *,
        registry: StrategyRegistry | None = None,
        metrics: MetricsSink | None = None,
        clock: IClock | None = None,
    ) -> AggregatorService:
        store, ledger, database = await build_storage(settings, clock=clock)
        pipeline = AggregationPipeline(
            ledger,
            store,
            registry or default_registry(),
            clock=clock,
            metrics=metrics or NullMetricsSink(),
            tz=settings.tz,
            operation_timeout=settings.storage.operation_timeout_seconds,
        )
        bus = create_event_bus(settings.bus)
        return cls(settings, pipeline, bus, store, ledger, database)

    async def handle(self, event: InboundEvent, routing_key: str) -> None:
        """Bus handler.  Raising leaves the message for redelivery."""
        result = await self.pipeline.execute(event, routing_key)
        logger.debug(
            "Handled %s on %s: %s", event.id, routing_key, result.outcome.value,
        )

    async def start(self) -> None:
        for subject in self.settings.bus.subjects:
            await self.bus.subscribe(
                subject, self.settings.bus.consumer_group, self.handle,
            )
            logger.info("Subscribed to subject: %s", subject)
        await self.bus.start()
        self._started = True
        logger.info("Aggregator service started")

    async def stop(self) -> None:
        if self._started:
            await self.bus.stop()
            self._started = False
        await self.store.close()
        if self.ledger is not getattr(self.store, "ledger", None):
            await self.ledger.close()
        if self.database is not None:
            await self.database.dispose()
        logger.info("Aggregator service stopped")
