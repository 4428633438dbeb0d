"""ripple - Real-time message fan-out and delivery tracking for chat.

Usage:
    from ripple import ChatHub, RippleOptions

    # Single process, ephemeral storage
    hub = ChatHub.in_memory()

    # Configured from RIPPLE_* environment variables
    hub = ChatHub.from_options(RippleOptions.from_env())

    # Full workflow
    alice = await hub.store.create_user(display_name="Alice")
    bob = await hub.store.create_user(display_name="Bob")
    room = await hub.membership.create_room(alice["user_id"], display_name="lobby")
    await hub.membership.add_member(room.room_id, bob["user_id"])

    result = await hub.pipeline.submit(room.room_id, alice["user_id"], "Hello!")
    await hub.tracker.record_read(result.message.mid, bob["user_id"])
    page = await hub.pipeline.history(room.room_id, bob["user_id"], after=0)
"""

from ripple._version import __version__
from ripple.errors import (
    BusUnavailable,
    Conflict,
    InvalidCredential,
    NotFound,
    PersistenceError,
    RippleError,
    Unauthorized,
    ValidationError,
)
from ripple.events import EventBus, InMemoryEventBus, RedisEventBus
from ripple.hub import ChatHub
from ripple.options import RippleConfigError, RippleOptions

__all__ = [
    "__version__",
    "ChatHub",
    "RippleOptions",
    "RippleConfigError",
    "EventBus",
    "InMemoryEventBus",
    "RedisEventBus",
    "RippleError",
    "Unauthorized",
    "InvalidCredential",
    "ValidationError",
    "NotFound",
    "Conflict",
    "PersistenceError",
    "BusUnavailable",
]
