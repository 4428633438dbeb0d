"""Message pipeline: the unit of "send".

Validates a message, persists it with its room order key and only then
broadcasts it. Edits, deletes and reactions go through the same path.

Ordering:
    The order key is generated by the persistence layer. A per-room lock
    spans persist + publish, so events of one room leave this process in
    order-key order while different rooms proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass

from .errors import BusUnavailable, Conflict, NotFound, Unauthorized, ValidationError
from .events import EventBus, EventType, build_event, room_topic
from .membership import RoomMembershipStore
from .metrics import metrics
from .models import ELEVATED_ROLES, Message
from .store import Store

logger = logging.getLogger(__name__)

MAX_REACTION_LENGTH = 32


@dataclass
class SubmitResult:
    message: Message
    client_temp_id: str | None = None


class MessagePipeline:
    """Accepts, edits, deletes and pages room messages.

    Args:
        store: Persistence layer
        membership: Room membership store used for authorization
        bus: Fan-out bus for the resulting events
        max_content_length: Longest accepted message content
        max_attachments: Most attachment references per message
        history_page_limit: Upper bound for history page sizes
    """

    def __init__(
        self,
        store: Store,
        membership: RoomMembershipStore,
        bus: EventBus,
        max_content_length: int = 4000,
        max_attachments: int = 10,
        history_page_limit: int = 100,
    ):
        self.store = store
        self.membership = membership
        self.bus = bus
        self.max_content_length = max_content_length
        self.max_attachments = max_attachments
        self.history_page_limit = history_page_limit
        # Held only while a room is busy; idle locks are collected
        self._room_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        return lock

    # --- Validation ---

    def _validate_content(self, content: str | None, attachments: list[str] | None) -> list[str]:
        """Check content and attachment limits. Returns the attachment list."""
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ValidationError("Message content must be a string")
        if len(content) > self.max_content_length:
            raise ValidationError(
                f"Message content exceeds {self.max_content_length} characters"
            )

        attachments = list(attachments or [])
        if len(attachments) > self.max_attachments:
            raise ValidationError(f"At most {self.max_attachments} attachments are allowed")
        for ref in attachments:
            if not isinstance(ref, str) or not ref.strip():
                raise ValidationError("Attachment references must be non-empty strings")

        if not content.strip() and not attachments:
            raise ValidationError("Message must have content or attachments")
        return attachments

    async def _get_message(self, message_id: str) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")
        return message

    async def _authorize_editor(self, message: Message, editor_id: str) -> None:
        if editor_id == message.sender_id:
            return
        role = await self.membership.get_role(message.room_id, editor_id)
        if role not in ELEVATED_ROLES:
            raise Unauthorized("Only the sender or a room owner/admin can change this message")

    async def _publish(self, event_type: EventType, room_id: str, payload: dict) -> None:
        """Broadcast on the room topic. A bus outage never undoes persisted state."""
        topic = room_topic(room_id)
        try:
            await self.bus.publish(topic, build_event(event_type, topic, payload))
        except BusUnavailable as e:
            logger.warning(f"Dropped {event_type.value} for room {room_id}: {e}")

    # --- Operations ---

    async def submit(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        attachments: list[str] | None = None,
        client_temp_id: str | None = None,
    ) -> SubmitResult:
        """Persist a message and broadcast it to the room.

        Raises:
            NotFound: If the room does not exist.
            Unauthorized: If the sender is not a member of the room.
            ValidationError: If the content or attachments are invalid.
            PersistenceError: If the message could not be stored.
        """
        await self.membership.require_member(room_id, sender_id)
        attachments = self._validate_content(content, attachments)

        async with self._room_lock(room_id):
            message = await self.store.insert_message(room_id, sender_id, content, attachments)
            metrics.increment("messages_submitted")
            payload = message.to_dict()
            payload["client_temp_id"] = client_temp_id
            await self._publish(EventType.MESSAGE_CREATED, room_id, payload)

        logger.debug(f"Message {message.mid} seq={message.seq} submitted to room {room_id}")
        return SubmitResult(message=message, client_temp_id=client_temp_id)

    async def edit(self, message_id: str, editor_id: str, new_content: str) -> Message:
        """Replace a message's content.

        Raises:
            NotFound: If the message does not exist.
            Unauthorized: If the editor is neither the sender nor an owner/admin.
            Conflict: If the message has been deleted.
            ValidationError: If the new content is invalid.
        """
        message = await self._get_message(message_id)
        await self._authorize_editor(message, editor_id)
        if message.deleted:
            raise Conflict(f"Message {message_id} has been deleted")
        self._validate_content(new_content, message.attachments)

        async with self._room_lock(message.room_id):
            updated = await self.store.update_message_content(message_id, new_content)
            if updated is None:
                raise Conflict(f"Message {message_id} has been deleted")
            await self._publish(EventType.MESSAGE_UPDATED, updated.room_id, updated.to_dict())
        return updated

    async def delete(self, message_id: str, editor_id: str) -> Message:
        """Tombstone a message. Deleting a deleted message changes nothing.

        Raises:
            NotFound: If the message does not exist.
            Unauthorized: If the editor is neither the sender nor an owner/admin.
        """
        message = await self._get_message(message_id)
        await self._authorize_editor(message, editor_id)

        async with self._room_lock(message.room_id):
            tombstone, changed = await self.store.tombstone_message(message_id)
            if tombstone is None:
                raise NotFound(f"Message {message_id} not found")
            if changed:
                await self._publish(
                    EventType.MESSAGE_DELETED,
                    tombstone.room_id,
                    {
                        "mid": tombstone.mid,
                        "room_id": tombstone.room_id,
                        "seq": tombstone.seq,
                        "deleted_at": tombstone.deleted_at,
                    },
                )
        return tombstone

    async def react(self, message_id: str, user_id: str, reaction: str) -> bool:
        """Add a reaction. Returns False if the user already reacted this way.

        Raises:
            ValidationError: If the reaction is empty or too long.
            NotFound: If the message does not exist.
            Unauthorized: If the user is not a member of the message's room.
            Conflict: If the message has been deleted.
        """
        reaction = (reaction or "").strip()
        if not reaction or len(reaction) > MAX_REACTION_LENGTH:
            raise ValidationError(f"Reaction must be 1 to {MAX_REACTION_LENGTH} characters")

        message = await self._get_message(message_id)
        await self.membership.require_member(message.room_id, user_id)
        if message.deleted:
            raise Conflict(f"Message {message_id} has been deleted")

        added = await self.store.add_reaction(message_id, user_id, reaction)
        if added:
            await self._publish(
                EventType.MESSAGE_REACTION,
                message.room_id,
                {
                    "mid": message_id,
                    "room_id": message.room_id,
                    "user_id": user_id,
                    "reaction": reaction,
                },
            )
        return added

    async def history(
        self,
        room_id: str,
        user_id: str,
        before: int | None = None,
        after: int | None = None,
        limit: int = 50,
    ) -> list[Message]:
        """Page through a room's messages by order key, ascending.

        Raises:
            NotFound: If the room does not exist.
            Unauthorized: If the user is not a member.
            ValidationError: If a cursor is negative.
        """
        await self.membership.require_member(room_id, user_id)
        for name, cursor in (("before", before), ("after", after)):
            if cursor is not None and cursor < 0:
                raise ValidationError(f"{name} must not be negative")
        limit = max(1, min(limit, self.history_page_limit))
        return await self.store.get_messages_by_room(room_id, before=before, after=after, limit=limit)
