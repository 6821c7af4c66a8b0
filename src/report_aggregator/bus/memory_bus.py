"""In-memory event bus for tests and single-process runs.

No external dependencies. Handlers are called in publish order.
Mirrors the Redis Streams interface: subscribers join a consumer group
and each message is delivered to exactly one handler per group
(round-robin among the group's competing consumers).

At-least-once delivery can be simulated with :meth:`redeliver`, which
pushes every recorded message through the handlers again.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from report_aggregator.core.events import EventHandler, InboundEvent

from .schemas import decode_fields, encode_event

logger = logging.getLogger(__name__)


@dataclass
class MemoryDeadLetter:
    """A delivery the memory bus could not complete."""

    topic: str
    group: str
    event_id: str | None
    error: str
    timestamp: float = field(default_factory=time.monotonic)


class MemoryEventBus:
    """In-memory event bus.  Safe within a single asyncio event loop."""

    def __init__(self) -> None:
        # topic -> group -> handlers
        self._groups: dict[str, dict[str, list[EventHandler]]] = defaultdict(
            lambda: defaultdict(list)
        )
        self._turns: dict[tuple[str, str], int] = defaultdict(int)
        self._history: list[tuple[str, dict[str, str]]] = []
        self._running = False

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[MemoryDeadLetter] = []
        self._messages_processed: int = 0

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def publish(
        self, topic: str, event: InboundEvent | Mapping[str, Any],
    ) -> None:
        """Record *event* on *topic* and deliver it to every group."""
        fields = encode_event(event)
        self._history.append((topic, fields))
        await self._deliver(topic, fields)

    async def subscribe(self, topic: str, group: str, handler: EventHandler) -> None:
        """Add *handler* as a competing consumer of *group* on *topic*."""
        self._groups[topic][group].append(handler)

    async def redeliver(self, topic: str | None = None) -> int:
        """Deliver recorded messages again.  Returns the number replayed."""
        replay = [
            (t, f) for t, f in self._history if topic is None or t == topic
        ]
        for t, fields in replay:
            await self._deliver(t, fields)
        return len(replay)

    async def _deliver(self, topic: str, fields: dict[str, str]) -> None:
        event = decode_fields(fields)
        for group, handlers in self._groups.get(topic, {}).items():
            if not handlers:
                continue
            if event is None:
                self._dead_letter(topic, group, None, "deserialization_failed")
                continue
            turn = self._turns[(topic, group)]
            self._turns[(topic, group)] = turn + 1
            handler = handlers[turn % len(handlers)]
            try:
                await handler(event, topic)
                self._messages_processed += 1
            except Exception as exc:
                self._error_counts[f"{topic}/{group}"] += 1
                self._dead_letter(topic, group, event.id, str(exc))
                logger.exception(
                    "Delivery of %s on %s/%s failed",
                    event.id, topic, group,
                )

    def _dead_letter(
        self, topic: str, group: str, event_id: str | None, error: str,
    ) -> None:
        self._dead_letters.append(
            MemoryDeadLetter(topic=topic, group=group, event_id=event_id, error=error)
        )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Handler failures keyed by ``topic/group``."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[MemoryDeadLetter]:
        """Copy of every failed delivery so far."""
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        """Handler runs that returned normally."""
        return self._messages_processed

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def get_history(self, topic: str | None = None) -> list[tuple[str, dict[str, str]]]:
        """Get published messages, optionally filtered by topic."""
        if topic is None:
            return list(self._history)
        return [(t, f) for t, f in self._history if t == topic]

    def clear_history(self) -> None:
        self._history.clear()
