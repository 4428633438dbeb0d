"""Tests for the event envelope and the in-memory bus."""

import asyncio
import json

import pytest

from ripple.errors import BusUnavailable
from ripple.events import (
    SCHEMA_VERSION,
    Event,
    EventType,
    InMemoryEventBus,
    Subscription,
    build_event,
    room_topic,
    user_topic,
)
from ripple.metrics import metrics
from ripple.testing import collect


@pytest.fixture
def bus():
    """Create a fresh InMemoryEventBus for each test."""
    return InMemoryEventBus(subscriber_buffer=4, node_id="node-a")


def make_event(n: int, topic: str = "room:abc") -> Event:
    return build_event(EventType.MESSAGE_CREATED, topic, {"n": n})


class TestEnvelope:
    def test_topics(self):
        assert room_topic("r1") == "room:r1"
        assert user_topic("u1") == "user:u1"

    def test_json_envelope_fields(self):
        """The serialized envelope carries type, topic, payload and version."""
        event = build_event(EventType.TYPING, "room:r1", {"user_id": "u"}, origin="n1")
        raw = json.loads(event.to_json())

        assert raw["type"] == "typing"
        assert raw["topic"] == "room:r1"
        assert raw["payload"] == {"user_id": "u"}
        assert raw["origin"] == "n1"
        assert raw["schema_version"] == SCHEMA_VERSION
        assert raw["timestamp"]

        assert Event.from_json(event.to_json()) == event

    def test_malformed_envelope(self):
        with pytest.raises(ValueError):
            Event.from_json("not json")
        with pytest.raises(ValueError):
            Event.from_json('{"payload": {}}')


class TestPublishAndSubscribe:
    @pytest.mark.asyncio
    async def test_every_subscriber_receives_in_publish_order(self, bus):
        """All subscribers of a topic see A before B."""
        first = await bus.subscribe("room:abc")
        second = await bus.subscribe("room:abc")

        await bus.publish("room:abc", make_event(1))
        await bus.publish("room:abc", make_event(2))

        for sub in (first, second):
            events = await collect(sub, 2)
            assert [e.payload["n"] for e in events] == [1, 2]

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_no_backlog(self, bus):
        await bus.publish("room:abc", make_event(1))
        sub = await bus.subscribe("room:abc")

        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.05)

    @pytest.mark.asyncio
    async def test_topics_are_isolated(self, bus):
        sub = await bus.subscribe("room:abc")
        await bus.publish("room:other", make_event(1, "room:other"))
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_origin_is_stamped(self, bus):
        sub = await bus.subscribe("room:abc")
        await bus.publish("room:abc", make_event(1))
        event = await sub.get(timeout=1)
        assert event.origin == "node-a"

    @pytest.mark.asyncio
    async def test_iteration_waits_for_publish(self, bus):
        """Iterating suspends until an event is published."""
        sub = await bus.subscribe("room:abc")

        async def consume():
            async for event in sub:
                return event.payload["n"]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        assert not task.done()

        await bus.publish("room:abc", make_event(7))
        assert await asyncio.wait_for(task, 1) == 7


class TestSlowSubscriber:
    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self, bus):
        """A slow consumer loses the oldest events; publish never blocks."""
        sub = await bus.subscribe("room:abc")

        for n in range(1, 7):
            await bus.publish("room:abc", make_event(n))

        assert sub.dropped == 2
        assert metrics.get_counter("events_dropped") == 2
        events = await collect(sub, 4)
        assert [e.payload["n"] for e in events] == [3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_other_subscribers_unaffected(self, bus):
        slow = await bus.subscribe("room:abc")
        fast = await bus.subscribe("room:abc")

        received = []
        for n in range(1, 7):
            await bus.publish("room:abc", make_event(n))
            received.append((await fast.get(timeout=1)).payload["n"])

        assert received == [1, 2, 3, 4, 5, 6]
        assert slow.dropped == 2
        assert fast.dropped == 0


class TestClose:
    @pytest.mark.asyncio
    async def test_subscription_close_discards_and_unsubscribes(self, bus):
        sub = await bus.subscribe("room:abc")
        await bus.publish("room:abc", make_event(1))

        await sub.close()

        assert sub.pending == 0
        assert bus.subscriber_count("room:abc") == 0
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_consumer(self):
        sub = Subscription("room:abc")

        async def consume():
            return [event async for event in sub]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        await sub.close()
        assert await asyncio.wait_for(task, 1) == []

    @pytest.mark.asyncio
    async def test_bus_close(self, bus):
        sub = await bus.subscribe("room:abc")
        await bus.close()

        assert sub.closed
        with pytest.raises(BusUnavailable):
            await bus.publish("room:abc", make_event(1))
        with pytest.raises(BusUnavailable):
            await bus.subscribe("room:abc")
