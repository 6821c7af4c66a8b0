"""Message-bus adapters delivering ``(event, routing_key)`` pairs."""

from report_aggregator.core.events import EventHandler

from .bus import create_event_bus

__all__ = ["EventHandler", "create_event_bus"]
