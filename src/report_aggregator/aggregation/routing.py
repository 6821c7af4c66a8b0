"""Routing-key to report-category mapping.

A static prefix table: the first matching prefix wins, anything
unmatched lands in the ``general`` category.
"""

from __future__ import annotations

DEFAULT_CATEGORY = "general"

CATEGORY_PREFIXES: tuple[tuple[str, str], ...] = (
    ("orders.", "orders"),
    ("delivery.", "delivery"),
    ("notification.", "notifications"),
)


def category_for(routing_key: str | None) -> str:
    """Return the report category for a bus routing key."""
    if not routing_key:
        return DEFAULT_CATEGORY
    for prefix, category in CATEGORY_PREFIXES:
        if routing_key.startswith(prefix):
            return category
    return DEFAULT_CATEGORY
