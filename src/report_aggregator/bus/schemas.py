"""Wire format for bus messages.

A message is a flat mapping with one field, ``data``, holding the event
as a JSON object.  Decoding is lenient: anything that is not a JSON
object is reported as malformed (``None``) rather than raised, so the
consumer can dead-letter it without retrying.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from report_aggregator.core.events import InboundEvent

logger = logging.getLogger(__name__)

DATA_FIELD = "data"


def encode_event(event: InboundEvent | Mapping[str, Any]) -> dict[str, str]:
    """Serialize an event into stream fields."""
    if isinstance(event, InboundEvent):
        body = event.model_dump(mode="json", exclude_none=True)
    else:
        body = dict(event)
    return {DATA_FIELD: json.dumps(body, default=str)}


def decode_fields(fields: Mapping[str, Any]) -> InboundEvent | None:
    """Deserialize stream fields back into an :class:`InboundEvent`."""
    raw = fields.get(DATA_FIELD)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if not raw:
        logger.warning("Malformed message, no %r field: %s", DATA_FIELD, fields)
        return None
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed message, invalid JSON: %.200s", raw)
        return None
    if not isinstance(body, dict):
        logger.warning("Malformed message, not an object: %.200s", raw)
        return None
    try:
        return InboundEvent.model_validate(body)
    except ValidationError:
        logger.warning("Malformed message, schema mismatch: %.200s", raw, exc_info=True)
        return None
