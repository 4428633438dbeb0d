"""Connection gateway: the single entry and exit point for client sessions.

Authenticates a transport once, turns each inbound frame into exactly one
call on the registry, pipeline or tracker, and turns each bus event
forwarded by the registry into one outbound frame. It owns no business rules:
every failure becomes an ``error`` frame sent back to the originating
connection.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from uuid_extensions import uuid7 as make_uuid7

from . import protocol
from .auth_provider import CredentialValidator
from .delivery import DeliveryTracker
from .errors import BusUnavailable, InvalidCredential, NotFound, PersistenceError, RippleError
from .events import Event, EventType
from .pipeline import MessagePipeline
from .sessions import Connection, SessionRegistry

logger = logging.getLogger(__name__)

# Close code sent when authentication fails
CLOSE_INVALID_CREDENTIAL = 4401


class Transport(Protocol):
    """A bidirectional client session, e.g. a WebSocket."""

    async def send(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ConnectionGateway:
    def __init__(
        self,
        validator: CredentialValidator,
        registry: SessionRegistry,
        pipeline: MessagePipeline,
        tracker: DeliveryTracker,
    ):
        self.validator = validator
        self.registry = registry
        self.pipeline = pipeline
        self.tracker = tracker
        self._transports: dict[str, Transport] = {}
        self._handlers: dict[str, Callable[[Connection, Any], Awaitable[None]]] = {
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "send_message": self._on_send_message,
            "message_read": self._on_message_read,
            "typing": self._on_typing,
            "stop_typing": self._on_stop_typing,
            "edit_message": self._on_edit_message,
            "delete_message": self._on_delete_message,
            "react_message": self._on_react_message,
        }

    async def open(self, transport: Transport, token: str | None) -> Connection:
        """Authenticate a transport and register its connection.

        On a rejected credential an error frame is sent, the transport is
        closed and InvalidCredential is raised.
        """
        connection_id = str(make_uuid7())
        self.registry.begin(connection_id)

        try:
            user_id = await self.validator.validate(token)
        except RippleError as e:
            await self.registry.disconnect(connection_id)
            await transport.send(protocol.encode(protocol.error_frame("auth", e.code, e.message)))
            await transport.close(code=CLOSE_INVALID_CREDENTIAL, reason=e.message)
            if isinstance(e, InvalidCredential):
                raise
            raise InvalidCredential(e.message) from e

        self._transports[connection_id] = transport
        try:
            return await self.registry.connect(user_id, connection_id, deliver=self._deliver)
        except RippleError:
            self._transports.pop(connection_id, None)
            raise

    async def close(self, connection_id: str) -> None:
        """Forget a transport and disconnect its connection."""
        self._transports.pop(connection_id, None)
        await self.registry.disconnect(connection_id)

    async def handle_frame(self, connection_id: str, raw: str | bytes) -> None:
        """Dispatch one inbound frame. Errors are reported to the client."""
        event_name = "unknown"
        try:
            event_name, data = protocol.decode_frame(raw)
            payload = protocol.parse_payload(event_name, data)
            conn = self.registry.get(connection_id)
            await self._handlers[event_name](conn, payload)
        except RippleError as e:
            if isinstance(e, (PersistenceError, BusUnavailable)):
                logger.warning(f"{event_name} on connection {connection_id} failed: {e.message}")
            else:
                logger.debug(f"{event_name} on connection {connection_id} rejected: {e.message}")
            await self._send(connection_id, protocol.error_frame(event_name, e.code, e.message))

    async def _send(self, connection_id: str, message: dict[str, Any]) -> None:
        transport = self._transports.get(connection_id)
        if transport is None:
            return
        await transport.send(protocol.encode(message))

    async def _deliver(self, connection_id: str, event: Event) -> None:
        """Forward a bus event to one connection."""
        message = protocol.event_to_frame(event)
        if message is None:
            return
        try:
            conn = self.registry.get(connection_id)
        except NotFound:
            return

        if event.type == EventType.TYPING.value and event.payload.get("user_id") == conn.user_id:
            return

        await self._send(connection_id, message)

        if (
            event.type == EventType.MESSAGE_CREATED.value
            and event.payload.get("sender_id") != conn.user_id
        ):
            try:
                await self.tracker.record_delivered(event.payload["mid"], conn.user_id)
            except RippleError as e:
                logger.warning(
                    f"Could not record delivery of {event.payload['mid']} to {conn.user_id}: {e}"
                )

    # --- Inbound handlers ---

    async def _on_join_room(self, conn: Connection, payload: protocol.JoinRoom) -> None:
        await self.registry.join_room(conn.connection_id, payload.room_id)
        await self._send(conn.connection_id, protocol.room_joined(payload.room_id))

    async def _on_leave_room(self, conn: Connection, payload: protocol.LeaveRoom) -> None:
        await self.registry.leave_room(conn.connection_id, payload.room_id)
        await self._send(conn.connection_id, protocol.room_left(payload.room_id))

    async def _on_send_message(self, conn: Connection, payload: protocol.SendMessage) -> None:
        result = await self.pipeline.submit(
            payload.room_id,
            conn.user_id,
            payload.content,
            attachments=payload.attachments,
            client_temp_id=payload.temp_id,
        )
        await self._send(
            conn.connection_id,
            protocol.message_ack(result.client_temp_id, result.message.mid, result.message.seq),
        )

    async def _on_message_read(self, conn: Connection, payload: protocol.MessageRead) -> None:
        await self.tracker.record_read(payload.message_id, conn.user_id, room_id=payload.room_id)

    async def _on_typing(self, conn: Connection, payload: protocol.Typing) -> None:
        await self.registry.set_typing(conn.connection_id, payload.room_id, True)

    async def _on_stop_typing(self, conn: Connection, payload: protocol.StopTyping) -> None:
        await self.registry.set_typing(conn.connection_id, payload.room_id, False)

    async def _on_edit_message(self, conn: Connection, payload: protocol.EditMessage) -> None:
        await self.pipeline.edit(payload.message_id, conn.user_id, payload.new_content)

    async def _on_delete_message(self, conn: Connection, payload: protocol.DeleteMessage) -> None:
        await self.pipeline.delete(payload.message_id, conn.user_id)

    async def _on_react_message(self, conn: Connection, payload: protocol.ReactMessage) -> None:
        await self.pipeline.react(payload.message_id, conn.user_id, payload.reaction)
