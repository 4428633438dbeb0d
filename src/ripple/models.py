"""Domain records shared by the core components.

Rows come out of the database layer as dicts; these dataclasses give the
pipeline, tracker and gateway a typed view of them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER)
ELEVATED_ROLES = (ROLE_OWNER, ROLE_ADMIN)


@dataclass
class User:
    user_id: str
    display_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "User":
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            user_id=row["user_id"],
            display_name=row.get("display_name"),
            metadata=metadata,
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


@dataclass
class Room:
    room_id: str
    is_private: bool = False
    display_name: str | None = None
    created_by: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Room":
        return cls(
            room_id=row["room_id"],
            is_private=bool(row.get("is_private")),
            display_name=row.get("display_name"),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "is_private": self.is_private,
            "display_name": self.display_name,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }


@dataclass
class Member:
    room_id: str
    user_id: str
    role: str = ROLE_MEMBER
    joined_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Member":
        return cls(
            room_id=row["room_id"],
            user_id=row["user_id"],
            role=row.get("role") or ROLE_MEMBER,
            joined_at=row.get("joined_at"),
        )

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "user_id": self.user_id,
            "role": self.role,
            "joined_at": self.joined_at,
        }


@dataclass
class Message:
    """A persisted room message.

    ``seq`` is the room-local order key: strictly increasing and unique
    within ``room_id``. ``mid`` is a UUIDv7 and globally unique.
    """

    mid: str
    room_id: str
    sender_id: str
    seq: int
    content: str
    attachments: list[str] = field(default_factory=list)
    created_at: str | None = None
    edited_at: str | None = None
    deleted_at: str | None = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        attachments = row.get("attachments") or []
        if isinstance(attachments, str):
            attachments = json.loads(attachments)
        return cls(
            mid=row["mid"],
            room_id=row["room_id"],
            sender_id=row["sender_id"],
            seq=int(row["seq"]),
            content=row.get("content") or "",
            attachments=list(attachments),
            created_at=row.get("created_at"),
            edited_at=row.get("edited_at"),
            deleted_at=row.get("deleted_at"),
        )

    def to_dict(self) -> dict:
        return {
            "mid": self.mid,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "seq": self.seq,
            "content": self.content,
            "attachments": list(self.attachments),
            "created_at": self.created_at,
            "edited_at": self.edited_at,
            "deleted_at": self.deleted_at,
            "deleted": self.deleted,
        }


@dataclass
class DeliveryRecord:
    """Delivery and read state for one (message, recipient) pair.

    Both timestamps only ever move from None to a value; ``read_at`` set
    implies ``delivered_at`` set.
    """

    mid: str
    recipient_id: str
    delivered_at: str | None = None
    read_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "DeliveryRecord":
        return cls(
            mid=row["mid"],
            recipient_id=row["recipient_id"],
            delivered_at=row.get("delivered_at"),
            read_at=row.get("read_at"),
        )

    def to_dict(self) -> dict:
        return {
            "mid": self.mid,
            "recipient_id": self.recipient_id,
            "delivered_at": self.delivered_at,
            "read_at": self.read_at,
        }


@dataclass
class DeliveryChange:
    """Result of an upsert: the new record plus which fields transitioned."""

    record: DeliveryRecord
    delivered: bool = False
    read: bool = False

    @property
    def changed(self) -> bool:
        return self.delivered or self.read
