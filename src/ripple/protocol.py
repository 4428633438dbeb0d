"""WebSocket wire protocol.

Frames are JSON text: ``{"event": name, "data": {...}}`` with camelCase keys
in ``data``. Inbound payloads are validated with pydantic models; outbound
frames are built from bus events.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .events import Event, EventType

# --- Inbound ---


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinRoom(_Payload):
    room_id: str = Field(alias="roomId", min_length=1)


class LeaveRoom(_Payload):
    room_id: str = Field(alias="roomId", min_length=1)


class SendMessage(_Payload):
    room_id: str = Field(alias="roomId", min_length=1)
    content: str = ""
    attachments: list[str] = Field(default_factory=list)
    temp_id: str | None = Field(default=None, alias="tempId")


class MessageRead(_Payload):
    message_id: str = Field(alias="messageId", min_length=1)
    room_id: str | None = Field(default=None, alias="roomId")


class Typing(_Payload):
    room_id: str = Field(alias="roomId", min_length=1)


class StopTyping(_Payload):
    room_id: str = Field(alias="roomId", min_length=1)


class EditMessage(_Payload):
    message_id: str = Field(alias="messageId", min_length=1)
    new_content: str = Field(alias="newContent")


class DeleteMessage(_Payload):
    message_id: str = Field(alias="messageId", min_length=1)


class ReactMessage(_Payload):
    message_id: str = Field(alias="messageId", min_length=1)
    reaction: str


INBOUND_EVENTS: dict[str, type[_Payload]] = {
    "join_room": JoinRoom,
    "leave_room": LeaveRoom,
    "send_message": SendMessage,
    "message_read": MessageRead,
    "typing": Typing,
    "stop_typing": StopTyping,
    "edit_message": EditMessage,
    "delete_message": DeleteMessage,
    "react_message": ReactMessage,
}


def decode_frame(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    """Split a raw frame into its event name and data.

    Raises:
        ValidationError: If the frame is not a JSON object with a string event.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ValidationError('Frame must be an object with an "event" name')

    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError('Frame "data" must be an object')
    return frame["event"], data


def parse_payload(event: str, data: dict[str, Any]) -> _Payload:
    """Validate the data of an inbound event.

    Raises:
        ValidationError: If the event is unknown or its data is invalid.
    """
    model = INBOUND_EVENTS.get(event)
    if model is None:
        raise ValidationError(f"Unknown event {event!r}")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {event} payload: {details}") from e


# --- Outbound ---


def frame(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": data}


def encode(message: dict[str, Any]) -> str:
    return json.dumps(message)


def message_frame(payload: dict[str, Any]) -> dict[str, Any]:
    return frame(
        "message",
        {
            "id": payload["mid"],
            "roomId": payload["room_id"],
            "senderId": payload["sender_id"],
            "content": payload.get("content", ""),
            "attachments": payload.get("attachments", []),
            "createdAt": payload.get("created_at"),
            "seq": payload["seq"],
        },
    )


def message_ack(temp_id: str | None, mid: str, seq: int | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {"tempId": temp_id, "id": mid}
    if seq is not None:
        data["seq"] = seq
    return frame("message_ack", data)


def room_joined(room_id: str) -> dict[str, Any]:
    return frame("room_joined", {"roomId": room_id})


def room_left(room_id: str) -> dict[str, Any]:
    return frame("room_left", {"roomId": room_id})


def error_frame(event: str, code: str, message: str) -> dict[str, Any]:
    return frame("error", {"event": event, "code": code, "message": message})


def _delivery_frame(payload: dict[str, Any]) -> dict[str, Any]:
    if payload.get("read"):
        return frame(
            "message_read",
            {
                "messageId": payload["mid"],
                "readerId": payload["recipient_id"],
                "readAt": payload["read_at"],
            },
        )
    return frame(
        "message_delivered",
        {
            "messageId": payload["mid"],
            "deliveredTo": payload["recipient_id"],
            "deliveredAt": payload["delivered_at"],
        },
    )


def _typing_frame(payload: dict[str, Any]) -> dict[str, Any]:
    name = "user_typing" if payload.get("is_typing") else "user_stop_typing"
    return frame(name, {"userId": payload["user_id"], "roomId": payload["room_id"]})


def event_to_frame(event: Event) -> dict[str, Any] | None:
    """Translate a bus event into its wire frame. Unknown types map to None."""
    payload = event.payload
    if event.type == EventType.MESSAGE_CREATED.value:
        return message_frame(payload)
    if event.type == EventType.MESSAGE_UPDATED.value:
        return frame(
            "message_edited",
            {
                "id": payload["mid"],
                "roomId": payload["room_id"],
                "content": payload.get("content", ""),
                "editedAt": payload.get("edited_at"),
            },
        )
    if event.type == EventType.MESSAGE_DELETED.value:
        return frame("message_deleted", {"id": payload["mid"], "roomId": payload["room_id"]})
    if event.type == EventType.MESSAGE_REACTION.value:
        return frame(
            "message_reaction",
            {
                "messageId": payload["mid"],
                "reaction": payload["reaction"],
                "userId": payload["user_id"],
            },
        )
    if event.type == EventType.DELIVERY_UPDATE.value:
        return _delivery_frame(payload)
    if event.type == EventType.PRESENCE.value:
        return frame("presence_update", {"userId": payload["user_id"], "status": payload["status"]})
    if event.type == EventType.TYPING.value:
        return _typing_frame(payload)
    if event.type == EventType.MEMBER_REMOVED.value:
        return frame(
            "member_removed",
            {
                "roomId": payload["room_id"],
                "userId": payload["user_id"],
                "removedBy": payload.get("removed_by"),
            },
        )
    return None
