"""Per-event-type reduction rules.

A reducer folds one event into a report's indicator set::

    reducer(event, current_indicators) -> new_indicators

Reducers are pure: they never mutate ``current_indicators`` and never do
I/O, so a store may re-run them against fresher indicators when an
optimistic update loses a race.  They are also total: a missing or
non-numeric payload field contributes zero.

The registry is assembled once at startup with
:class:`StrategyRegistryBuilder` and frozen into an immutable
:class:`StrategyRegistry` before any traffic, so lookups need no locking.
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from report_aggregator.core.errors import ReducerFault
from report_aggregator.core.events import InboundEvent

logger = logging.getLogger(__name__)

Indicators = dict[str, Any]
Reducer = Callable[[InboundEvent, Mapping[str, Any]], Indicators]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _number(value: Any) -> int | float:
    """Coerce *value* to a number, treating anything unusable as 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return int(parsed) if parsed.is_integer() else parsed
    return 0


def _field(event: InboundEvent, name: str) -> int | float:
    return _number(event.payload.get(name))


def _incremented(
    indicators: Mapping[str, Any], **increments: int | float,
) -> Indicators:
    out = copy.deepcopy(dict(indicators))
    for key, amount in increments.items():
        current = _number(out.get(key))
        try:
            total = current + amount
        except OverflowError:
            total = math.inf
        if isinstance(total, float) and not math.isfinite(total):
            logger.warning("Indicator %s would overflow, increment dropped", key)
            total = current
        out[key] = total
    return out


def _bump_nested(indicators: Indicators, key: str, sub_key: str) -> None:
    nested = indicators.get(key)
    if not isinstance(nested, dict):
        nested = {}
    nested[sub_key] = _number(nested.get(sub_key)) + 1
    indicators[key] = nested


# ---------------------------------------------------------------------------
# Default rule
# ---------------------------------------------------------------------------

def count_events(
    routing_key: str, indicators: Mapping[str, Any],
) -> Indicators:
    """Fallback rule: ``totalEvents += 1`` and ``eventCounts[key] += 1``."""
    out = _incremented(indicators, totalEvents=1)
    _bump_nested(out, "eventCounts", routing_key)
    return out


# ---------------------------------------------------------------------------
# Domain reducers
# ---------------------------------------------------------------------------

def order_created(event: InboundEvent, indicators: Mapping[str, Any]) -> Indicators:
    return _incremented(
        indicators,
        totalOrders=1,
        ordersCreated=1,
        totalOrderValue=_field(event, "total"),
    )


def order_updated(event: InboundEvent, indicators: Mapping[str, Any]) -> Indicators:
    return _incremented(indicators, totalOrders=1, ordersUpdated=1)


def delivery_completed(
    event: InboundEvent, indicators: Mapping[str, Any],
) -> Indicators:
    return _incremented(
        indicators,
        deliveriesCompleted=1,
        totalDeliveryTime=_field(event, "duration"),
    )


def notification_sent(
    event: InboundEvent, indicators: Mapping[str, Any],
) -> Indicators:
    out = _incremented(indicators, notificationsSent=1)
    kind = event.payload.get("type")
    _bump_nested(out, "notificationsByType", str(kind) if kind else "unknown")
    return out


DOMAIN_REDUCERS: dict[str, Reducer] = {
    "orders.created": order_created,
    "orders.updated": order_updated,
    "delivery.completed": delivery_completed,
    "notification.sent": notification_sent,
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class StrategyRegistry:
    """Immutable routing-key -> reducer table with a counting fallback."""

    def __init__(self, reducers: Mapping[str, Reducer] | None = None) -> None:
        self._reducers: Mapping[str, Reducer] = MappingProxyType(
            dict(reducers or {})
        )

    def has_strategy(self, routing_key: str) -> bool:
        return routing_key in self._reducers

    @property
    def routing_keys(self) -> list[str]:
        return sorted(self._reducers)

    def aggregate(
        self,
        routing_key: str,
        event: InboundEvent,
        current: Mapping[str, Any],
    ) -> Indicators:
        """Fold *event* into *current* and return the new indicators.

        Raises:
            ReducerFault: If the registered reducer raises.
        """
        reducer = self._reducers.get(routing_key)
        if reducer is None:
            return count_events(routing_key, current)
        try:
            return reducer(event, current)
        except Exception as exc:
            raise ReducerFault(routing_key, event.id, exc) from exc


class StrategyRegistryBuilder:
    """Mutable staging area for reducers, used only during startup."""

    def __init__(self) -> None:
        self._reducers: dict[str, Reducer] = {}

    def register(self, routing_key: str, reducer: Reducer) -> StrategyRegistryBuilder:
        """Add or replace the reducer for *routing_key* (last one wins)."""
        if routing_key in self._reducers:
            logger.info("Replacing reducer for %s", routing_key)
        self._reducers[routing_key] = reducer
        return self

    def build(self) -> StrategyRegistry:
        return StrategyRegistry(self._reducers)


def default_registry() -> StrategyRegistry:
    """Registry with the built-in order/delivery/notification reducers."""
    builder = StrategyRegistryBuilder()
    for routing_key, reducer in DOMAIN_REDUCERS.items():
        builder.register(routing_key, reducer)
    logger.info("Registered %d aggregation strategies", len(DOMAIN_REDUCERS))
    return builder.build()
