"""Redis Streams transport.

Each routing key is a stream and each subscribing service is a consumer
group on it.  ``workers`` consumers per group pull independently, so
events for one stream are processed concurrently, across processes as
well as within one.

Delivery contract (at-least-once):

* An entry is XACKed only after its handler returned.
* A failing entry stays in the group's pending list.  Any consumer
  takes it over with XAUTOCLAIM once it has been idle ``claim_idle_ms``.
* The ``max_handler_retries``-th failure dead-letters the entry and
  XACKs it, so one poison event cannot stall the stream.
* Entries that cannot be decoded are dead-lettered and XACKed at once.
* ``stop()`` stops pulling, lets running handlers finish within
  ``shutdown_grace_seconds``, then cancels what is left.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from report_aggregator.core.events import EventHandler, InboundEvent

from .schemas import decode_fields, encode_event

logger = logging.getLogger(__name__)

StreamEntry = tuple[str, Mapping[str, Any]]


@dataclass
class DeadLetter:
    """Stream entry given up on."""

    topic: str
    group: str
    msg_id: str
    event_id: str | None
    error: str
    attempts: int
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class Subscription:
    topic: str
    group: str
    handler: EventHandler

    @property
    def key(self) -> str:
        return f"{self.topic}/{self.group}"


class RedisStreamsBus:
    """Consumer-group bus over Redis Streams.

    Args:
        redis_url: Server URL; ignored when *client* is given.
        workers: Consumers per subscription.
        max_stream_length: Approximate MAXLEN applied on publish.
        block_ms: XREADGROUP block time.
        batch_size: Entries pulled per read.
        max_handler_retries: Failures before an entry is dead-lettered.
        claim_idle_ms: Idle time after which pending entries are taken over.
        shutdown_grace_seconds: How long ``stop()`` waits for handlers.
        client: Pre-built client.  The bus does not close it.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        workers: int = 4,
        max_stream_length: int = 100_000,
        block_ms: int = 1000,
        batch_size: int = 1,
        max_handler_retries: int = 5,
        claim_idle_ms: int = 30_000,
        shutdown_grace_seconds: float = 30.0,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._client = client
        self._owns_client = client is None
        self._workers = workers
        self._maxlen = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._max_retries = max_handler_retries
        self._claim_idle_ms = claim_idle_ms
        self._grace = shutdown_grace_seconds
        self._node = f"{socket.gethostname()}-{os.getpid()}"

        self._subscriptions: list[Subscription] = []
        self._workers_running: list[asyncio.Task] = []
        self._next_claim: dict[str, float] = {}
        self._running = False

        self._failures: Counter[str] = Counter()  # per "topic/group"
        self._attempts: Counter[str] = Counter()  # per "topic/group/msg_id"
        self._dead_letters: list[DeadLetter] = []
        self._acked = 0
        self._in_flight = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        self._running = True
        for sub in self._subscriptions:
            await self._spawn(sub)
        logger.info(
            "Redis Streams bus started: %d subscription(s) x %d worker(s)",
            len(self._subscriptions), self._workers,
        )

    async def stop(self) -> None:
        self._running = False
        if self._workers_running:
            _, busy = await asyncio.wait(self._workers_running, timeout=self._grace)
            if busy:
                logger.warning(
                    "Cancelling %d worker(s) still handling after %.1fs",
                    len(busy), self._grace,
                )
                for task in busy:
                    task.cancel()
                await asyncio.gather(*busy, return_exceptions=True)
            self._workers_running.clear()

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Redis Streams bus stopped")

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    async def publish(
        self, topic: str, event: InboundEvent | Mapping[str, Any],
    ) -> None:
        if self._client is None:
            raise RuntimeError("RedisStreamsBus not started")
        await self._client.xadd(
            topic, encode_event(event), maxlen=self._maxlen, approximate=True,
        )

    async def subscribe(self, topic: str, group: str, handler: EventHandler) -> None:
        """Attach *handler* to *group* on *topic*; spawns workers if running."""
        sub = Subscription(topic, group, handler)
        self._subscriptions.append(sub)
        if self._running and self._client is not None:
            await self._spawn(sub)

    async def _spawn(self, sub: Subscription) -> None:
        await self._ensure_group(sub.topic, sub.group)
        for n in range(self._workers):
            consumer = f"{sub.group}-{self._node}-{n}"
            self._workers_running.append(
                asyncio.create_task(
                    self._worker(sub, consumer), name=f"{sub.key}:{consumer}",
                )
            )

    async def _ensure_group(self, topic: str, group: str) -> None:
        assert self._client is not None
        try:
            await self._client.xgroup_create(topic, group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            # BUSYGROUP: the group already exists.
            if "BUSYGROUP" not in str(exc):
                raise

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, sub: Subscription, consumer: str) -> None:
        """Pull and deliver until stopped.

        The running flag is consulted between entries only, so an entry
        whose handler has started is always carried to ack or failure.
        """
        while self._running:
            try:
                for msg_id, fields in await self._next_batch(sub, consumer):
                    if not self._running:
                        break
                    await self._deliver(sub, msg_id, fields)
            except asyncio.CancelledError:
                break
            except Exception:
                self._failures[sub.key] += 1
                logger.exception("Worker %s failed reading %s", consumer, sub.key)
                await asyncio.sleep(1)

    async def _next_batch(
        self, sub: Subscription, consumer: str,
    ) -> list[StreamEntry]:
        """Stale pending entries when a claim is due, else new entries."""
        assert self._client is not None
        now = time.monotonic()
        if now >= self._next_claim.get(consumer, 0.0):
            self._next_claim[consumer] = now + self._claim_idle_ms / 1000
            reply = await self._client.xautoclaim(
                sub.topic,
                sub.group,
                consumer,
                min_idle_time=self._claim_idle_ms,
                start_id="0-0",
                count=self._batch_size,
            )
            # Entries trimmed from the stream come back with no fields.
            claimed = [(i, f) for i, f in (reply[1] if len(reply) > 1 else []) if f]
            if claimed:
                logger.info("%s reclaimed %d idle entries on %s", consumer, len(claimed), sub.key)
                return claimed

        reply = await self._client.xreadgroup(
            groupname=sub.group,
            consumername=consumer,
            streams={sub.topic: ">"},
            count=self._batch_size,
            block=self._block_ms,
        )
        return [entry for _stream, entries in reply or [] for entry in entries]

    async def _deliver(
        self, sub: Subscription, msg_id: str, fields: Mapping[str, Any],
    ) -> None:
        assert self._client is not None
        event = decode_fields(fields)
        if event is None:
            self._bury(sub, msg_id, None, "deserialization_failed", attempts=1)
            await self._client.xack(sub.topic, sub.group, msg_id)
            return

        self._in_flight += 1
        try:
            await sub.handler(event, sub.topic)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._record_failure(sub, msg_id, event, exc):
                await self._client.xack(sub.topic, sub.group, msg_id)
            return
        finally:
            self._in_flight -= 1

        await self._client.xack(sub.topic, sub.group, msg_id)
        self._attempts.pop(f"{sub.key}/{msg_id}", None)
        self._acked += 1

    def _record_failure(
        self, sub: Subscription, msg_id: str, event: InboundEvent, exc: Exception,
    ) -> bool:
        """Count a handler failure.  ``True`` once the entry is dead-lettered."""
        attempt_key = f"{sub.key}/{msg_id}"
        self._failures[sub.key] += 1
        self._attempts[attempt_key] += 1
        attempts = self._attempts[attempt_key]
        if attempts < self._max_retries:
            logger.warning(
                "Handler failed for event %s on %s (attempt %d of %d), left pending: %s",
                event.id, sub.key, attempts, self._max_retries, exc,
            )
            return False

        logger.error(
            "Event %s on %s failed %d times, dead-lettering entry %s",
            event.id, sub.key, attempts, msg_id,
        )
        self._bury(sub, msg_id, event.id, str(exc), attempts=attempts)
        del self._attempts[attempt_key]
        return True

    def _bury(
        self,
        sub: Subscription,
        msg_id: str,
        event_id: str | None,
        error: str,
        *,
        attempts: int,
    ) -> None:
        self._dead_letters.append(
            DeadLetter(
                topic=sub.topic,
                group=sub.group,
                msg_id=str(msg_id),
                event_id=event_id,
                error=error,
                attempts=attempts,
            )
        )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Handler and read failures per ``topic/group``."""
        return dict(self._failures)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        """Entries acknowledged after a successful handler run."""
        return self._acked

    @property
    def in_flight(self) -> int:
        return self._in_flight
