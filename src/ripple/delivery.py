"""Per-recipient delivery and read tracking.

Acks may arrive more than once and in any order. Each ack is one atomic
read-modify-write in the store that only moves timestamps forward, and a
delivery-update event is broadcast only when something actually changed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from .errors import BusUnavailable, NotFound, ValidationError
from .events import EventBus, EventType, build_event, room_topic
from .membership import RoomMembershipStore
from .models import DeliveryChange, DeliveryRecord, Message
from .store import Store

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeliveryTracker:
    def __init__(self, store: Store, membership: RoomMembershipStore, bus: EventBus):
        self.store = store
        self.membership = membership
        self.bus = bus

    async def _get_message(self, message_id: str) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")
        return message

    async def record_delivered(self, message_id: str, recipient_id: str) -> DeliveryChange | None:
        """Record that a message reached a recipient.

        Returns:
            The resulting change, or None for the sender's own messages.

        Raises:
            NotFound: If the message does not exist.
            Unauthorized: If the recipient is not a member of the message's room.
        """
        return await self._record(message_id, recipient_id, read=False)

    async def record_read(
        self, message_id: str, recipient_id: str, room_id: str | None = None
    ) -> DeliveryChange | None:
        """Record that a recipient read a message. Also marks it delivered.

        Raises:
            ValidationError: If ``room_id`` is given and is not the message's room.
        """
        return await self._record(message_id, recipient_id, read=True, room_id=room_id)

    async def _record(
        self, message_id: str, recipient_id: str, read: bool, room_id: str | None = None
    ) -> DeliveryChange | None:
        message = await self._get_message(message_id)
        if room_id is not None and room_id != message.room_id:
            raise ValidationError(f"Message {message_id} is not in room {room_id}")
        if recipient_id == message.sender_id:
            return None
        await self.membership.require_member(message.room_id, recipient_id)

        now = _now()
        change = await self.store.upsert_delivery_record(
            message_id,
            recipient_id,
            delivered_at=now,
            read_at=now if read else None,
        )
        if change.changed:
            await self._publish(message, change)
        return change

    async def _publish(self, message: Message, change: DeliveryChange) -> None:
        topic = room_topic(message.room_id)
        payload = change.record.to_dict()
        payload.update(
            room_id=message.room_id,
            sender_id=message.sender_id,
            delivered=change.delivered,
            read=change.read,
        )
        try:
            await self.bus.publish(topic, build_event(EventType.DELIVERY_UPDATE, topic, payload))
        except BusUnavailable as e:
            logger.warning(f"Dropped delivery update for message {message.mid}: {e}")

    async def snapshot(self, message_id: str) -> dict[str, DeliveryRecord]:
        """Current delivery state of a message keyed by recipient.

        Raises:
            NotFound: If the message does not exist.
        """
        await self._get_message(message_id)
        records = await self.store.get_delivery_records(message_id)
        return {record.recipient_id: record for record in records}
