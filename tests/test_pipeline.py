"""Tests for the message pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from ripple.errors import BusUnavailable, Conflict, NotFound, Unauthorized, ValidationError
from ripple.events import EventType, room_topic
from ripple.metrics import metrics
from ripple.testing import collect


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_persists_then_broadcasts(self, seeded):
        """A submitted message is stored with seq 1 and reaches room subscribers."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        sub = await hub.bus.subscribe(room_topic(room_id))

        result = await hub.pipeline.submit(
            room_id, seeded.alice["user_id"], "hello", client_temp_id="tmp-1"
        )

        assert result.message.seq == 1
        assert result.client_temp_id == "tmp-1"

        [event] = await collect(sub, 1)
        assert event.type == EventType.MESSAGE_CREATED.value
        assert event.payload["mid"] == result.message.mid
        assert event.payload["content"] == "hello"
        assert event.payload["client_temp_id"] == "tmp-1"

        stored = await hub.store.get_message(result.message.mid)
        assert stored.content == "hello"
        assert stored.sender_id == seeded.alice["user_id"]
        assert stored.deleted is False
        assert metrics.get_counter("messages_submitted") == 1

    @pytest.mark.asyncio
    async def test_concurrent_submits_get_unique_increasing_seqs(self, seeded):
        """Broadcast order matches order-key order under concurrency."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        sub = await hub.bus.subscribe(room_topic(room_id))

        results = await asyncio.gather(
            *(
                hub.pipeline.submit(room_id, seeded.bob["user_id"], f"m{i}")
                for i in range(20)
            )
        )

        assert sorted(r.message.seq for r in results) == list(range(1, 21))
        events = await collect(sub, 20)
        assert [e.payload["seq"] for e in events] == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_idle_room_locks_are_released(self, seeded):
        hub = seeded.hub
        for room in (seeded.public_room, seeded.private_room):
            await hub.pipeline.submit(room.room_id, seeded.alice["user_id"], "hi")

        assert len(hub.pipeline._room_locks) == 0

    @pytest.mark.asyncio
    async def test_non_member_rejected_and_nothing_persisted(self, seeded):
        hub = seeded.hub
        room_id = seeded.private_room.room_id

        with pytest.raises(Unauthorized):
            await hub.pipeline.submit(room_id, seeded.carol["user_id"], "let me in")

        assert await hub.store.get_messages_by_room(room_id) == []

    @pytest.mark.asyncio
    async def test_unknown_room(self, seeded):
        with pytest.raises(NotFound):
            await seeded.hub.pipeline.submit("missing", seeded.alice["user_id"], "hi")

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, seeded):
        with pytest.raises(ValidationError):
            await seeded.hub.pipeline.submit(
                seeded.public_room.room_id, seeded.alice["user_id"], "   "
            )

    @pytest.mark.asyncio
    async def test_attachment_only_message_accepted(self, seeded):
        result = await seeded.hub.pipeline.submit(
            seeded.public_room.room_id, seeded.alice["user_id"], "", attachments=["blob://1"]
        )
        assert result.message.attachments == ["blob://1"]

    @pytest.mark.asyncio
    async def test_limits(self, seeded):
        pipeline = seeded.hub.pipeline
        room_id = seeded.public_room.room_id
        alice = seeded.alice["user_id"]

        with pytest.raises(ValidationError, match="exceeds"):
            await pipeline.submit(room_id, alice, "x" * (pipeline.max_content_length + 1))
        with pytest.raises(ValidationError, match="attachments"):
            await pipeline.submit(
                room_id, alice, "hi", attachments=[f"blob://{i}" for i in range(11)]
            )
        with pytest.raises(ValidationError):
            await pipeline.submit(room_id, alice, "hi", attachments=[""])

    @pytest.mark.asyncio
    async def test_bus_outage_does_not_undo_persist(self, seeded):
        """A message stored before the bus fails stays stored."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        hub.pipeline.bus = AsyncMock()
        hub.pipeline.bus.publish.side_effect = BusUnavailable("redis down")

        result = await hub.pipeline.submit(room_id, seeded.alice["user_id"], "still here")

        history = await hub.pipeline.history(room_id, seeded.alice["user_id"])
        assert [m.mid for m in history] == [result.message.mid]


class TestEditAndDelete:
    @pytest.mark.asyncio
    async def test_edit_then_delete(self, seeded):
        """Edit broadcasts the new content; delete leaves a tombstone."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        alice = seeded.alice["user_id"]
        sent = await hub.pipeline.submit(room_id, alice, "hello")
        sub = await hub.bus.subscribe(room_topic(room_id))

        edited = await hub.pipeline.edit(sent.message.mid, alice, "bye")
        deleted = await hub.pipeline.delete(sent.message.mid, alice)

        update, removal = await collect(sub, 2)
        assert update.type == EventType.MESSAGE_UPDATED.value
        assert update.payload["content"] == "bye"
        assert edited.edited_at is not None

        assert removal.type == EventType.MESSAGE_DELETED.value
        assert removal.payload == {
            "mid": sent.message.mid,
            "room_id": room_id,
            "seq": 1,
            "deleted_at": deleted.deleted_at,
        }

        [tombstone] = await hub.pipeline.history(room_id, alice)
        assert tombstone.deleted
        assert tombstone.mid == sent.message.mid
        assert tombstone.created_at == sent.message.created_at
        assert tombstone.content == ""
        assert tombstone.seq == 1

    @pytest.mark.asyncio
    async def test_second_delete_is_silent_noop(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        alice = seeded.alice["user_id"]
        sent = await hub.pipeline.submit(room_id, alice, "hello")
        first = await hub.pipeline.delete(sent.message.mid, alice)
        sub = await hub.bus.subscribe(room_topic(room_id))

        second = await hub.pipeline.delete(sent.message.mid, alice)

        assert second.deleted_at == first.deleted_at
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_edit_deleted_message_conflicts(self, seeded):
        hub = seeded.hub
        alice = seeded.alice["user_id"]
        sent = await hub.pipeline.submit(seeded.public_room.room_id, alice, "hello")
        await hub.pipeline.delete(sent.message.mid, alice)

        with pytest.raises(Conflict):
            await hub.pipeline.edit(sent.message.mid, alice, "back")

    @pytest.mark.asyncio
    async def test_only_sender_or_elevated_may_edit(self, seeded):
        """Members cannot edit others' messages; the room owner can."""
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        sent = await hub.pipeline.submit(room_id, seeded.bob["user_id"], "bob's")

        with pytest.raises(Unauthorized):
            await hub.pipeline.edit(sent.message.mid, seeded.carol["user_id"], "carol's")

        edited = await hub.pipeline.edit(sent.message.mid, seeded.alice["user_id"], "moderated")
        assert edited.content == "moderated"

        with pytest.raises(Unauthorized):
            await hub.pipeline.delete(sent.message.mid, seeded.carol["user_id"])

    @pytest.mark.asyncio
    async def test_edit_unknown_message(self, seeded):
        with pytest.raises(NotFound):
            await seeded.hub.pipeline.edit("missing", seeded.alice["user_id"], "x")


class TestReactions:
    @pytest.mark.asyncio
    async def test_react_broadcasts_once(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        sent = await hub.pipeline.submit(room_id, seeded.alice["user_id"], "hello")
        sub = await hub.bus.subscribe(room_topic(room_id))

        assert await hub.pipeline.react(sent.message.mid, seeded.bob["user_id"], " +1 ") is True
        assert await hub.pipeline.react(sent.message.mid, seeded.bob["user_id"], "+1") is False

        [event] = await collect(sub, 1)
        assert event.type == EventType.MESSAGE_REACTION.value
        assert event.payload["reaction"] == "+1"
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_react_validation(self, seeded):
        hub = seeded.hub
        sent = await hub.pipeline.submit(
            seeded.public_room.room_id, seeded.alice["user_id"], "hello"
        )
        with pytest.raises(ValidationError):
            await hub.pipeline.react(sent.message.mid, seeded.bob["user_id"], " ")
        with pytest.raises(ValidationError):
            await hub.pipeline.react(sent.message.mid, seeded.bob["user_id"], "x" * 33)
        with pytest.raises(Unauthorized):
            await hub.pipeline.react(sent.message.mid, seeded.carol["user_id"], "+1")


class TestHistory:
    @pytest.mark.asyncio
    async def test_pages_by_order_key(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        alice = seeded.alice["user_id"]
        for i in range(1, 8):
            await hub.pipeline.submit(room_id, alice, f"m{i}")

        latest = await hub.pipeline.history(room_id, alice, limit=3)
        assert [m.seq for m in latest] == [5, 6, 7]

        older = await hub.pipeline.history(room_id, alice, before=5, limit=3)
        assert [m.seq for m in older] == [2, 3, 4]

        missed = await hub.pipeline.history(room_id, alice, after=6)
        assert [m.seq for m in missed] == [7]

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, seeded):
        hub = seeded.hub
        room_id = seeded.public_room.room_id
        alice = seeded.alice["user_id"]
        hub.pipeline.history_page_limit = 2
        for i in range(4):
            await hub.pipeline.submit(room_id, alice, f"m{i}")

        assert len(await hub.pipeline.history(room_id, alice, limit=500)) == 2
        assert len(await hub.pipeline.history(room_id, alice, limit=0)) == 1

    @pytest.mark.asyncio
    async def test_history_requires_membership(self, seeded):
        with pytest.raises(Unauthorized):
            await seeded.hub.pipeline.history(
                seeded.private_room.room_id, seeded.carol["user_id"]
            )

    @pytest.mark.asyncio
    async def test_negative_cursor(self, seeded):
        with pytest.raises(ValidationError):
            await seeded.hub.pipeline.history(
                seeded.public_room.room_id, seeded.alice["user_id"], before=-1
            )
