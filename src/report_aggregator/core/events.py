"""Inbound event schema.

Events arrive from the bus as JSON objects.  The schema is
permissive: only ``id`` matters for admission, and a bad ``timestamp``
degrades to arrival time instead of rejecting the event.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> datetime:
    """Parse an event timestamp into an aware UTC datetime.

    Accepts ``datetime`` (naive is taken as UTC), ISO-8601 strings
    (``Z`` suffix allowed) and epoch milliseconds.

    Raises:
        ValueError: If *value* cannot be interpreted as an instant.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class InboundEvent(BaseModel):
    """A domain event as delivered by the message bus."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str | None = None
    timestamp: Any = None
    payload: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("payload", "data"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @field_validator("payload", mode="before")
    @classmethod
    def _coerce_payload(cls, value: Any) -> dict[str, Any]:
        # Non-object payloads fold as empty.
        if isinstance(value, dict):
            return value
        return {}

    @property
    def has_id(self) -> bool:
        return bool(self.id and self.id.strip())

    def occurred_at(self, arrival: datetime) -> datetime:
        """Event time, or *arrival* if absent or malformed."""
        if self.timestamp is None:
            return arrival
        try:
            return parse_timestamp(self.timestamp)
        except (ValueError, TypeError, OverflowError, OSError):
            logger.warning(
                "Malformed timestamp %r on event %s, using arrival time",
                self.timestamp,
                self.id,
            )
            return arrival


# Bus subscriber: ``await handler(event, routing_key)``.  Raising leaves
# the delivery unacknowledged.
EventHandler = Callable[[InboundEvent, str], Awaitable[None]]
