"""Tests for routing-key to category mapping."""

import pytest

from report_aggregator.aggregation.routing import DEFAULT_CATEGORY, category_for


@pytest.mark.parametrize(
    ("routing_key", "category"),
    [
        ("orders.created", "orders"),
        ("orders.updated", "orders"),
        ("delivery.completed", "delivery"),
        ("notification.sent", "notifications"),
        ("payments.captured", "general"),
        ("orders", "general"),
        ("", "general"),
        (None, "general"),
    ],
)
def test_category_for(routing_key, category):
    assert category_for(routing_key) == category


def test_default_category_is_general():
    assert DEFAULT_CATEGORY == "general"
