"""Pytest fixtures and helpers for testing code built on ripple.

Usage in conftest.py:
    pytest_plugins = ["ripple.testing"]

Available fixtures:
    - hub: Fresh in-memory ChatHub
    - seeded: Hub with Alice, Bob and Carol plus a public and a private room

Helpers:
    - RecordingTransport: gateway transport that keeps every frame it is sent
    - collect: read a number of events from a subscription with a timeout
    - wait_until: poll a condition while letting the event loop run
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest_asyncio

from .events import Event, Subscription
from .hub import ChatHub
from .models import Room
from .options import RippleOptions


@dataclass
class SeededHub:
    """An in-memory hub with users and rooms already created.

    Alice owns both rooms, Bob is a member of both, Carol of neither.
    """

    hub: ChatHub
    alice: dict[str, Any]
    bob: dict[str, Any]
    carol: dict[str, Any]
    public_room: Room
    private_room: Room


@dataclass
class RecordingTransport:
    """Transport that records frames instead of sending them anywhere."""

    sent: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False
    close_code: int | None = None

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def events(self, name: str) -> list[dict[str, Any]]:
        """Data of every frame sent with the given event name."""
        return [f["data"] for f in self.sent if f["event"] == name]

    def names(self) -> list[str]:
        return [f["event"] for f in self.sent]


async def collect(subscription: Subscription, count: int, timeout: float = 1.0) -> list[Event]:
    """Read ``count`` events, failing with TimeoutError if they do not arrive."""
    events = []
    for _ in range(count):
        events.append(await subscription.get(timeout=timeout))
    return events


async def wait_until(condition: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``condition()`` holds.

    Raises:
        asyncio.TimeoutError: If the condition does not hold in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise asyncio.TimeoutError("Condition not met in time")
        await asyncio.sleep(0.005)


async def seed(hub: ChatHub) -> SeededHub:
    """Create the standard users and rooms on a hub."""
    alice = await hub.store.create_user(display_name="Alice")
    bob = await hub.store.create_user(display_name="Bob")
    carol = await hub.store.create_user(display_name="Carol")

    public_room = await hub.membership.create_room(alice["user_id"], display_name="lobby")
    private_room = await hub.membership.create_room(
        alice["user_id"], display_name="secret", is_private=True
    )
    await hub.membership.add_member(public_room.room_id, bob["user_id"])
    await hub.membership.add_member(
        private_room.room_id, bob["user_id"], actor_id=alice["user_id"]
    )
    return SeededHub(
        hub=hub,
        alice=alice,
        bob=bob,
        carol=carol,
        public_room=public_room,
        private_room=private_room,
    )


@pytest_asyncio.fixture
async def hub() -> AsyncGenerator[ChatHub, None]:
    """Fresh in-memory ChatHub.

    Example:
        @pytest.mark.asyncio
        async def test_something(hub):
            user = await hub.store.create_user("Alice")
            ...
    """
    chat_hub = ChatHub.in_memory(RippleOptions(node_id="test"))
    yield chat_hub
    await chat_hub.close()


@pytest_asyncio.fixture
async def seeded(hub: ChatHub) -> SeededHub:
    """In-memory hub with Alice, Bob, Carol, a public and a private room."""
    return await seed(hub)
