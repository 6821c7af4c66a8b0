"""Redis-backed idempotency ledger.

Each applied event id is a key ``<prefix><event_id>`` written with
``SET NX EX``: the NX makes insertion a single atomic compare-and-set and
the EX is the retention window.  Once a key expires, a redelivery of
that event is treated as new.

Uses ``redis.asyncio`` for non-blocking I/O.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from report_aggregator.core.errors import InadmissibleEventError, LedgerUnavailable
from report_aggregator.core.clock import utc_now
from report_aggregator.core.models import MarkResult

logger = logging.getLogger(__name__)

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError)


def _ledger_key(prefix: str, event_id: str) -> str:
    return f"{prefix}{event_id}"


class RedisIdempotencyLedger:
    """Async Redis ledger of processed event ids.

    Args:
        redis_url: Redis connection URL (e.g. ``redis://localhost:6379/0``).
        prefix: Key namespace prefix.
        retention_seconds: TTL of each ledger key.  Defaults to 30 days.
        client: Pre-built client (tests); skips :meth:`connect`.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "aggregator:inbox:",
        retention_seconds: int = 30 * 24 * 3600,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._prefix = prefix
        self._ttl = retention_seconds
        self._redis: aioredis.Redis | None = client

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Establish the Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(
            self._url, decode_responses=True, max_connections=20,
        )
        await self._redis.ping()
        logger.info("Ledger Redis connected: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Ledger Redis connection closed.")

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError(
                "RedisIdempotencyLedger not connected. Call connect() first."
            )
        return self._redis

    # -- contract --------------------------------------------------------

    async def is_processed(self, event_id: str) -> bool:
        try:
            return bool(await self.redis.exists(_ledger_key(self._prefix, event_id)))
        except _UNAVAILABLE as exc:
            raise LedgerUnavailable(f"Ledger read failed: {exc}") from exc

    async def mark_processed(self, event_id: str) -> MarkResult:
        if not event_id or not event_id.strip():
            raise InadmissibleEventError("Cannot ledger an event without id")
        key = _ledger_key(self._prefix, event_id)
        try:
            result = await self.redis.set(
                key, utc_now().isoformat(), nx=True, ex=self._ttl,
            )
        except _UNAVAILABLE as exc:
            raise LedgerUnavailable(f"Ledger write failed: {exc}") from exc
        applied = bool(result)
        if not applied:
            logger.debug("Event %s already in ledger", event_id)
        return MarkResult(applied=applied)

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception:
            logger.exception("Ledger Redis health check failed.")
            return False
