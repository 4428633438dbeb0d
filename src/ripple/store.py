"""Persistence interface used by the core components.

The pipeline, delivery tracker, membership store and credential validator
only talk to a ``Store``. ``SqliteStore`` implements it over ``ripple.db``:
every call runs on a single worker thread that owns one connection, so the
event loop never blocks on disk I/O and SQLite sees one writer per process.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from . import db
from .errors import NotFound, PersistenceError
from .metrics import timed_db_operation
from .models import DeliveryChange, DeliveryRecord, Member, Message, Room, User

logger = logging.getLogger(__name__)


class Store(ABC):
    """Abstract persistence layer.

    Implementations raise PersistenceError for storage failures and never
    leave a partially applied write behind.
    """

    # --- Users ---

    @abstractmethod
    async def create_user(
        self,
        display_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a user.

        Returns:
            dict with keys: user_id, token, display_name, metadata, created_at
        """

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    async def get_user_token_hash(self, user_id: str) -> str | None: ...

    # --- Rooms and membership ---

    @abstractmethod
    async def create_room(
        self,
        created_by: str,
        display_name: str | None = None,
        is_private: bool = False,
    ) -> Room:
        """Create a room with ``created_by`` as its owner."""

    @abstractmethod
    async def get_room(self, room_id: str) -> Room | None: ...

    @abstractmethod
    async def list_rooms_for_user(self, user_id: str) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_member(self, room_id: str, user_id: str) -> Member | None: ...

    @abstractmethod
    async def add_room_member(self, room_id: str, user_id: str, role: str = "member") -> Member | None:
        """Add a member. Returns None if the user already was one."""

    @abstractmethod
    async def remove_room_member(self, room_id: str, user_id: str) -> bool: ...

    @abstractmethod
    async def get_room_members(self, room_id: str) -> list[Member]: ...

    # --- Messages ---

    @abstractmethod
    async def insert_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        attachments: list[str] | None = None,
    ) -> Message:
        """Persist a message and assign its room order key."""

    @abstractmethod
    async def get_message(self, mid: str) -> Message | None: ...

    @abstractmethod
    async def update_message_content(self, mid: str, content: str) -> Message | None:
        """Edit a live message. Returns None if it is missing or deleted."""

    @abstractmethod
    async def tombstone_message(self, mid: str) -> tuple[Message | None, bool]:
        """Delete a message, keeping its row. Returns (message, changed)."""

    @abstractmethod
    async def get_messages_by_room(
        self,
        room_id: str,
        before: int | None = None,
        after: int | None = None,
        limit: int = 50,
    ) -> list[Message]: ...

    # --- Delivery ---

    @abstractmethod
    async def upsert_delivery_record(
        self,
        mid: str,
        recipient_id: str,
        delivered_at: str | None = None,
        read_at: str | None = None,
    ) -> DeliveryChange:
        """Move a delivery record forward in one atomic transaction."""

    @abstractmethod
    async def get_delivery_records(self, mid: str) -> list[DeliveryRecord]: ...

    # --- Reactions ---

    @abstractmethod
    async def add_reaction(self, mid: str, user_id: str, reaction: str) -> bool: ...

    @abstractmethod
    async def list_reactions(self, mid: str) -> list[dict[str, Any]]: ...

    def close(self) -> None:
        """Release resources held by the store."""


class SqliteStore(Store):
    """SQLite-backed store running on a dedicated worker thread.

    Args:
        path: Database file path, or ":memory:" for a private in-memory database.

    Several processes may share one database file; the order key constraint
    keeps room sequences consistent between them.
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ripple-db")
        self._closed = False
        try:
            self._conn: sqlite3.Connection = self._executor.submit(db.get_connection, self.path).result()
            self._executor.submit(db.init_db_with_conn, self._conn).result()
        except sqlite3.Error as e:
            self._executor.shutdown(wait=False)
            raise PersistenceError(f"Could not open database {self.path}: {e}") from e
        logger.info(f"Opened SQLite store at {self.path}")

    @classmethod
    def in_memory(cls) -> "SqliteStore":
        """Create a store over a private in-memory database (testing)."""
        return cls(":memory:")

    def _call(self, operation: str, fn, *args, **kwargs):
        with timed_db_operation(operation):
            try:
                return fn(*args, conn=self._conn, **kwargs)
            except sqlite3.Error as e:
                logger.warning(f"Persistence operation {operation} failed: {e}")
                raise PersistenceError(f"{operation} failed: {e}") from e

    async def _run(self, operation: str, fn, *args, **kwargs):
        """Run a ``ripple.db`` function on the worker thread."""
        if self._closed:
            raise PersistenceError("Store is closed")
        loop = asyncio.get_running_loop()
        call = functools.partial(self._call, operation, fn, *args, **kwargs)
        return await loop.run_in_executor(self._executor, call)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.submit(self._conn.close).result()
        self._executor.shutdown(wait=True)
        logger.info(f"Closed SQLite store at {self.path}")

    # --- Users ---

    async def create_user(
        self,
        display_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self._run("create_user", db.create_user, display_name, metadata)

    async def get_user(self, user_id: str) -> User | None:
        row = await self._run("get_user", db.get_user, user_id)
        return User.from_row(row) if row else None

    async def get_user_token_hash(self, user_id: str) -> str | None:
        return await self._run("get_user_token_hash", db.get_user_token_hash, user_id)

    # --- Rooms and membership ---

    async def create_room(
        self,
        created_by: str,
        display_name: str | None = None,
        is_private: bool = False,
    ) -> Room:
        try:
            row = await self._run("create_room", db.create_room, created_by, display_name, is_private)
        except ValueError as e:
            raise NotFound(str(e)) from e
        return Room.from_row(row)

    async def get_room(self, room_id: str) -> Room | None:
        row = await self._run("get_room", db.get_room, room_id)
        return Room.from_row(row) if row else None

    async def list_rooms_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return await self._run("list_rooms_for_user", db.list_rooms_for_user, user_id)

    async def get_member(self, room_id: str, user_id: str) -> Member | None:
        row = await self._run("get_member", db.get_member, room_id, user_id)
        return Member.from_row(row) if row else None

    async def add_room_member(self, room_id: str, user_id: str, role: str = "member") -> Member | None:
        try:
            row = await self._run("add_room_member", db.add_room_member, room_id, user_id, role)
        except ValueError as e:
            raise NotFound(str(e)) from e
        return Member.from_row(row) if row else None

    async def remove_room_member(self, room_id: str, user_id: str) -> bool:
        return await self._run("remove_room_member", db.remove_room_member, room_id, user_id)

    async def get_room_members(self, room_id: str) -> list[Member]:
        rows = await self._run("get_room_members", db.get_room_members, room_id)
        return [Member.from_row(row) for row in rows]

    # --- Messages ---

    async def insert_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        attachments: list[str] | None = None,
    ) -> Message:
        row = await self._run(
            "insert_message", db.insert_message, room_id, sender_id, content, attachments
        )
        return Message.from_row(row)

    async def get_message(self, mid: str) -> Message | None:
        row = await self._run("get_message", db.get_message, mid)
        return Message.from_row(row) if row else None

    async def update_message_content(self, mid: str, content: str) -> Message | None:
        row = await self._run("update_message_content", db.update_message_content, mid, content)
        return Message.from_row(row) if row else None

    async def tombstone_message(self, mid: str) -> tuple[Message | None, bool]:
        row, changed = await self._run("tombstone_message", db.tombstone_message, mid)
        return (Message.from_row(row) if row else None), changed

    async def get_messages_by_room(
        self,
        room_id: str,
        before: int | None = None,
        after: int | None = None,
        limit: int = 50,
    ) -> list[Message]:
        rows = await self._run(
            "get_messages_by_room",
            db.get_messages_by_room,
            room_id,
            before=before,
            after=after,
            limit=limit,
        )
        return [Message.from_row(row) for row in rows]

    # --- Delivery ---

    async def upsert_delivery_record(
        self,
        mid: str,
        recipient_id: str,
        delivered_at: str | None = None,
        read_at: str | None = None,
    ) -> DeliveryChange:
        row, delivered, read = await self._run(
            "upsert_delivery_record",
            db.upsert_delivery_record,
            mid,
            recipient_id,
            delivered_at=delivered_at,
            read_at=read_at,
        )
        return DeliveryChange(record=DeliveryRecord.from_row(row), delivered=delivered, read=read)

    async def get_delivery_records(self, mid: str) -> list[DeliveryRecord]:
        rows = await self._run("get_delivery_records", db.get_delivery_records, mid)
        return [DeliveryRecord.from_row(row) for row in rows]

    # --- Reactions ---

    async def add_reaction(self, mid: str, user_id: str, reaction: str) -> bool:
        return await self._run("add_reaction", db.add_reaction, mid, user_id, reaction)

    async def list_reactions(self, mid: str) -> list[dict[str, Any]]:
        return await self._run("list_reactions", db.list_reactions, mid)
