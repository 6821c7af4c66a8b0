"""Tests for MemoryEventBus: group delivery, redelivery, dead letters."""

from __future__ import annotations

import pytest

from report_aggregator.bus.memory_bus import MemoryEventBus
from report_aggregator.bus.schemas import DATA_FIELD


def _event(event_id: str = "e1") -> dict:
    return {"id": event_id, "payload": {"total": 1}}


class TestGroupDelivery:
    @pytest.mark.asyncio
    async def test_one_handler_per_group(self, memory_bus):
        seen: list[tuple[str, str]] = []

        async def worker_a(event, topic):
            seen.append(("a", event.id))

        async def worker_b(event, topic):
            seen.append(("b", event.id))

        await memory_bus.subscribe("orders.created", "reports", worker_a)
        await memory_bus.subscribe("orders.created", "reports", worker_b)
        for i in range(4):
            await memory_bus.publish("orders.created", _event(f"e{i}"))

        assert seen == [("a", "e0"), ("b", "e1"), ("a", "e2"), ("b", "e3")]
        assert memory_bus.messages_processed == 4

    @pytest.mark.asyncio
    async def test_every_group_receives(self, memory_bus):
        received: dict[str, list[str]] = {"g1": [], "g2": []}

        async def h1(event, topic):
            received["g1"].append(event.id)

        async def h2(event, topic):
            received["g2"].append(event.id)

        await memory_bus.subscribe("t", "g1", h1)
        await memory_bus.subscribe("t", "g2", h2)
        await memory_bus.publish("t", _event())

        assert received == {"g1": ["e1"], "g2": ["e1"]}

    @pytest.mark.asyncio
    async def test_handler_gets_topic(self, memory_bus):
        topics = []

        async def handler(event, topic):
            topics.append(topic)

        await memory_bus.subscribe("delivery.completed", "g", handler)
        await memory_bus.publish("delivery.completed", _event())
        assert topics == ["delivery.completed"]

    @pytest.mark.asyncio
    async def test_unsubscribed_topic_only_recorded(self, memory_bus):
        await memory_bus.publish("nobody.listens", _event())
        assert len(memory_bus.get_history("nobody.listens")) == 1
        assert memory_bus.messages_processed == 0


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_redeliver_replays_history(self, memory_bus):
        ids = []

        async def handler(event, topic):
            ids.append(event.id)

        await memory_bus.subscribe("t", "g", handler)
        await memory_bus.publish("t", _event("e1"))
        await memory_bus.publish("other", _event("e2"))

        assert await memory_bus.redeliver("t") == 1
        assert ids == ["e1", "e1"]

    @pytest.mark.asyncio
    async def test_clear_history(self, memory_bus):
        await memory_bus.publish("t", _event())
        memory_bus.clear_history()
        assert await memory_bus.redeliver() == 0


class TestErrors:
    @pytest.mark.asyncio
    async def test_handler_error_dead_lettered(self, memory_bus):
        async def bad(event, topic):
            raise RuntimeError("boom")

        await memory_bus.subscribe("t", "g", bad)
        await memory_bus.publish("t", _event("e7"))

        assert memory_bus.get_error_counts() == {"t/g": 1}
        [letter] = memory_bus.dead_letters
        assert letter.event_id == "e7"
        assert letter.error == "boom"
        assert memory_bus.messages_processed == 0

    @pytest.mark.asyncio
    async def test_malformed_message_dead_lettered(self, memory_bus):
        calls = []

        async def handler(event, topic):
            calls.append(event)

        await memory_bus.subscribe("t", "g", handler)
        await memory_bus._deliver("t", {DATA_FIELD: "not json"})

        assert calls == []
        [letter] = memory_bus.dead_letters
        assert letter.error == "deserialization_failed"
