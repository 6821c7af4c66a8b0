"""Event bus factory.

Creates the appropriate event bus implementation for the configured
backend.
"""

from __future__ import annotations

from report_aggregator.core.config import BusConfig
from report_aggregator.core.enums import BusBackend

from .memory_bus import MemoryEventBus
from .redis_streams import RedisStreamsBus


def create_event_bus(config: BusConfig) -> MemoryEventBus | RedisStreamsBus:
    """Create an event bus for the given config.

    - MEMORY: MemoryEventBus (no external deps, single process)
    - REDIS: RedisStreamsBus (persistent, shared consumer groups)
    """
    if config.backend == BusBackend.MEMORY:
        return MemoryEventBus()
    return RedisStreamsBus(
        redis_url=config.redis_url,
        workers=config.workers,
        max_stream_length=config.max_stream_length,
        block_ms=config.block_ms,
        batch_size=config.batch_size,
        max_handler_retries=config.max_handler_retries,
        claim_idle_ms=config.claim_idle_ms,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
    )
