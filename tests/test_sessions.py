"""Tests for the session registry: lifecycle, rooms and presence."""

import asyncio

import pytest

from ripple.errors import Conflict, NotFound, Unauthorized
from ripple.events import EventType, InMemoryEventBus, build_event, room_topic, user_topic
from ripple.hub import ChatHub
from ripple.options import RippleOptions
from ripple.sessions import ConnectionState, SessionRegistry
from ripple.store import SqliteStore
from ripple.testing import collect, wait_until


class Inbox:
    """Deliver callback that keeps what it receives."""

    def __init__(self):
        self.events = []

    async def __call__(self, connection_id, event):
        self.events.append((connection_id, event))

    def types(self):
        return [event.type for _, event in self.events]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, seeded):
        registry = seeded.hub.registry
        conn = await registry.connect(seeded.bob["user_id"], "c1")

        assert conn.state == ConnectionState.AUTHENTICATED
        assert registry.is_online(seeded.bob["user_id"])
        assert registry.get("c1") is conn

        await registry.disconnect("c1")

        assert conn.state == ConnectionState.DISCONNECTED
        assert not registry.is_online(seeded.bob["user_id"])
        with pytest.raises(NotFound):
            registry.get("c1")

    @pytest.mark.asyncio
    async def test_connection_ids_are_never_reused(self, seeded):
        registry = seeded.hub.registry
        registry.begin("c1")
        with pytest.raises(Conflict):
            registry.begin("c1")

        await registry.connect(seeded.bob["user_id"], "c1")
        with pytest.raises(Conflict):
            await registry.connect(seeded.bob["user_id"], "c1")

        await registry.disconnect("c1")
        with pytest.raises(Conflict):
            await registry.connect(seeded.bob["user_id"], "c1")
        with pytest.raises(Conflict):
            registry.begin("c1")

    @pytest.mark.asyncio
    async def test_disconnect_twice_is_noop(self, seeded):
        registry = seeded.hub.registry
        await registry.connect(seeded.bob["user_id"], "c1")
        await registry.disconnect("c1")
        await registry.disconnect("c1")

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, seeded):
        with pytest.raises(NotFound):
            await seeded.hub.registry.disconnect("never-seen")

    @pytest.mark.asyncio
    async def test_unauthenticated_connection_cannot_join(self, seeded):
        registry = seeded.hub.registry
        registry.begin("c1")
        with pytest.raises(Unauthorized):
            await registry.join_room("c1", seeded.public_room.room_id)
        assert not registry.is_online(seeded.bob["user_id"])


class TestPresence:
    @pytest.mark.asyncio
    async def test_online_and_offline_only_on_edges(self, seeded):
        """Two connections for one user yield one online and one offline."""
        hub = seeded.hub
        bob = seeded.bob["user_id"]
        sub = await hub.bus.subscribe(user_topic(bob))

        await hub.registry.connect(bob, "c1")
        await hub.registry.connect(bob, "c2")
        await hub.registry.disconnect("c1")
        assert hub.registry.is_online(bob)
        await hub.registry.disconnect("c2")

        events = await collect(sub, 2)
        assert [e.payload["status"] for e in events] == ["online", "offline"]
        assert all(e.type == EventType.PRESENCE.value for e in events)
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_presence_reaches_shared_rooms(self, seeded):
        hub = seeded.hub
        sub = await hub.bus.subscribe(room_topic(seeded.public_room.room_id))

        await hub.registry.connect(seeded.bob["user_id"], "c1")

        [event] = await collect(sub, 1)
        assert event.payload == {"user_id": seeded.bob["user_id"], "status": "online"}

    @pytest.mark.asyncio
    async def test_reconnect_within_grace_suppresses_offline(self, seeded):
        """A quick reconnect produces neither offline nor a second online."""
        hub = seeded.hub
        bob = seeded.bob["user_id"]
        registry = SessionRegistry(hub.bus, hub.membership, presence_grace_seconds=0.1)
        sub = await hub.bus.subscribe(user_topic(bob))

        await registry.connect(bob, "c1")
        await registry.disconnect("c1")
        await registry.connect(bob, "c2")
        await asyncio.sleep(0.15)

        [event] = await collect(sub, 1)
        assert event.payload["status"] == "online"
        assert sub.pending == 0

        await registry.disconnect("c2")
        [event] = await collect(sub, 1, timeout=1)
        assert event.payload["status"] == "offline"
        await registry.close()

    @pytest.mark.asyncio
    async def test_reconnect_racing_disconnect_stays_online(self, seeded):
        """A page refresh never leaves observers with a stale offline."""
        hub = seeded.hub
        bob = seeded.bob["user_id"]
        await hub.registry.connect(bob, "a", deliver=Inbox())
        await hub.registry.join_room("a", seeded.public_room.room_id)
        sub = await hub.bus.subscribe(user_topic(bob))

        await asyncio.gather(hub.registry.disconnect("a"), hub.registry.connect(bob, "b"))

        assert hub.registry.is_online(bob)
        statuses = [e.payload["status"] for e in await collect(sub, sub.pending)]
        # Either the refresh went unnoticed or both edges were announced in order
        assert statuses in ([], ["offline", "online"])

        await hub.registry.disconnect("b")
        [event] = await collect(sub, 1)
        assert event.payload["status"] == "offline"
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_online_users(self, seeded):
        registry = seeded.hub.registry
        await registry.connect(seeded.bob["user_id"], "c1")
        await registry.connect(seeded.alice["user_id"], "c2")

        assert registry.online_users() == sorted(
            [seeded.alice["user_id"], seeded.bob["user_id"]]
        )
        assert registry.connection_count() == 2


class TestRooms:
    @pytest.mark.asyncio
    async def test_joined_connection_receives_room_events(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        inbox = Inbox()
        await hub.registry.connect(seeded.bob["user_id"], "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)

        await hub.pipeline.submit(room_id, seeded.alice["user_id"], "hello")

        await wait_until(lambda: EventType.MESSAGE_CREATED.value in inbox.types())
        connection_id, event = inbox.events[-1]
        assert connection_id == "c1"
        assert event.payload["content"] == "hello"

    @pytest.mark.asyncio
    async def test_nothing_delivered_after_disconnect(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        inbox = Inbox()
        await hub.registry.connect(seeded.bob["user_id"], "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)
        await hub.registry.disconnect("c1")
        received = len(inbox.events)

        await hub.pipeline.submit(room_id, seeded.alice["user_id"], "anyone?")
        await asyncio.sleep(0.02)

        assert len(inbox.events) == received
        assert hub.bus.subscriber_count(room_topic(room_id)) == 0

    @pytest.mark.asyncio
    async def test_leave_room_stops_forwarding(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        inbox = Inbox()
        await hub.registry.connect(seeded.bob["user_id"], "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)

        await hub.registry.leave_room("c1", room_id)
        await hub.pipeline.submit(room_id, seeded.alice["user_id"], "gone")
        await asyncio.sleep(0.02)

        assert EventType.MESSAGE_CREATED.value not in inbox.types()
        with pytest.raises(NotFound):
            await hub.registry.leave_room("c1", room_id)

    @pytest.mark.asyncio
    async def test_join_public_room_enrolls(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        await hub.registry.connect(seeded.carol["user_id"], "c1")

        await hub.registry.join_room("c1", room_id)

        assert await hub.membership.is_member(room_id, seeded.carol["user_id"])
        assert room_id in hub.registry.get("c1").rooms

    @pytest.mark.asyncio
    async def test_join_private_room_requires_membership(self, seeded):
        hub = seeded.hub
        await hub.registry.connect(seeded.carol["user_id"], "c1")
        with pytest.raises(Unauthorized):
            await hub.registry.join_room("c1", seeded.private_room.room_id)
        assert hub.registry.get("c1").rooms == set()

    @pytest.mark.asyncio
    async def test_join_twice_conflicts(self, seeded):
        hub = seeded.hub
        await hub.registry.connect(seeded.bob["user_id"], "c1")
        await hub.registry.join_room("c1", seeded.public_room.room_id)
        with pytest.raises(Conflict):
            await hub.registry.join_room("c1", seeded.public_room.room_id)

    @pytest.mark.asyncio
    async def test_join_unknown_room(self, seeded):
        hub = seeded.hub
        await hub.registry.connect(seeded.bob["user_id"], "c1")
        with pytest.raises(NotFound):
            await hub.registry.join_room("c1", "missing")


class TestMemberRemoval:
    @pytest.mark.asyncio
    async def test_removed_member_stops_receiving_room(self, seeded):
        """After removal nothing more from a private room reaches the user."""
        hub = seeded.hub
        room_id = seeded.private_room.room_id
        alice = seeded.alice["user_id"]
        inbox = Inbox()
        await hub.registry.connect(seeded.bob["user_id"], "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)

        await hub.registry.remove_member(room_id, seeded.bob["user_id"], actor_id=alice)
        await hub.pipeline.submit(room_id, alice, "secret after removal")
        await asyncio.sleep(0.02)

        assert EventType.MESSAGE_CREATED.value not in inbox.types()
        assert inbox.types().count(EventType.MEMBER_REMOVED.value) == 1
        assert hub.registry.get("c1").rooms == set()
        assert hub.bus.subscriber_count(room_topic(room_id)) == 0

    @pytest.mark.asyncio
    async def test_remaining_members_are_told(self, seeded):
        hub = seeded.hub
        room_id = seeded.private_room.room_id
        sub = await hub.bus.subscribe(room_topic(room_id))

        await hub.registry.remove_member(
            room_id, seeded.bob["user_id"], actor_id=seeded.alice["user_id"]
        )

        [event] = await collect(sub, 1)
        assert event.type == EventType.MEMBER_REMOVED.value
        assert event.payload == {
            "room_id": room_id,
            "user_id": seeded.bob["user_id"],
            "removed_by": seeded.alice["user_id"],
        }

    @pytest.mark.asyncio
    async def test_removal_elsewhere_evicts_local_connections(self, seeded):
        """A removal announced by another process tears down the room here."""
        hub = seeded.hub
        room_id = seeded.private_room.room_id
        bob = seeded.bob["user_id"]
        inbox = Inbox()
        await hub.registry.connect(bob, "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)

        await hub.store.remove_room_member(room_id, bob)
        topic = room_topic(room_id)
        await hub.bus.publish(
            topic,
            build_event(
                EventType.MEMBER_REMOVED,
                topic,
                {"room_id": room_id, "user_id": bob, "removed_by": seeded.alice["user_id"]},
                origin="other-node",
            ),
        )

        await wait_until(lambda: room_id not in hub.registry.get("c1").rooms)
        await hub.pipeline.submit(room_id, seeded.alice["user_id"], "not for bob")
        await asyncio.sleep(0.02)
        assert EventType.MESSAGE_CREATED.value not in inbox.types()
        assert EventType.MEMBER_REMOVED.value in inbox.types()

    @pytest.mark.asyncio
    async def test_stale_removal_notice_is_ignored(self, seeded):
        """A user added back before the notice arrives stays joined."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        bob = seeded.bob["user_id"]
        inbox = Inbox()
        await hub.registry.connect(bob, "c1", deliver=inbox)
        await hub.registry.join_room("c1", room_id)

        topic = room_topic(room_id)
        await hub.bus.publish(
            topic,
            build_event(EventType.MEMBER_REMOVED, topic, {"room_id": room_id, "user_id": bob}),
        )
        await hub.pipeline.submit(room_id, seeded.alice["user_id"], "still here")

        await wait_until(lambda: EventType.MESSAGE_CREATED.value in inbox.types())
        assert room_id in hub.registry.get("c1").rooms

    @pytest.mark.asyncio
    async def test_evict_without_live_connections(self, seeded):
        hub = seeded.hub
        assert await hub.registry.evict(seeded.bob["user_id"], seeded.public_room.room_id) == 0

    @pytest.mark.asyncio
    async def test_removal_errors_propagate(self, seeded):
        hub = seeded.hub
        with pytest.raises(Unauthorized):
            await hub.registry.remove_member(
                seeded.public_room.room_id,
                seeded.alice["user_id"],
                actor_id=seeded.bob["user_id"],
            )
        with pytest.raises(NotFound):
            await hub.registry.remove_member(
                seeded.public_room.room_id, seeded.carol["user_id"]
            )


class TestTyping:
    @pytest.mark.asyncio
    async def test_typing_requires_joined_room(self, seeded):
        hub = seeded.hub
        await hub.registry.connect(seeded.bob["user_id"], "c1")
        with pytest.raises(Unauthorized):
            await hub.registry.set_typing("c1", seeded.public_room.room_id, True)

    @pytest.mark.asyncio
    async def test_typing_broadcast(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        await hub.registry.connect(seeded.bob["user_id"], "c1")
        await hub.registry.join_room("c1", room_id)
        sub = await hub.bus.subscribe(room_topic(room_id))

        await hub.registry.set_typing("c1", room_id, True)

        [event] = await collect(sub, 1)
        assert event.type == EventType.TYPING.value
        assert event.payload == {
            "user_id": seeded.bob["user_id"],
            "room_id": room_id,
            "is_typing": True,
        }


class TestRestart:
    @pytest.mark.asyncio
    async def test_history_survives_sessions_do_not(self, tmp_path):
        """A new hub on the same database sees messages but no connections."""
        path = tmp_path / "ripple.db"
        options = RippleOptions(db_path=str(path), node_id="first")

        first = ChatHub(SqliteStore(path), InMemoryEventBus(), options=options)
        alice = await first.store.create_user(display_name="Alice")
        room = await first.membership.create_room(alice["user_id"])
        await first.registry.connect(alice["user_id"], "c1")
        await first.pipeline.submit(room.room_id, alice["user_id"], "before restart")
        await first.close()

        second = ChatHub(SqliteStore(path), InMemoryEventBus(), options=options)
        try:
            history = await second.pipeline.history(room.room_id, alice["user_id"])
            assert [m.content for m in history] == ["before restart"]
            assert second.registry.connection_count() == 0
            assert not second.registry.is_online(alice["user_id"])
        finally:
            await second.close()
