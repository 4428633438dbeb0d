"""Room membership store.

Durable room -> members mapping with role checks. Reads are served from
TTL caches because every send, join and ack asks "is this user a member";
writes made through this store invalidate the affected entries.
"""

from __future__ import annotations

import logging
from typing import Any

from .cache import TTLCache
from .errors import Conflict, NotFound, Unauthorized, ValidationError
from .models import ELEVATED_ROLES, ROLE_MEMBER, ROLE_OWNER, ROLES, Member, Room
from .store import Store

logger = logging.getLogger(__name__)


class RoomMembershipStore:
    """Authorizes room access and computes broadcast targets.

    Args:
        store: Persistence layer
        cache_ttl: Seconds a cached room or role stays valid. Bounds how long
            a membership change made by another process can go unnoticed.
    """

    def __init__(self, store: Store, cache_ttl: float = 30.0):
        self.store = store
        self._rooms = TTLCache(name="rooms", default_ttl=cache_ttl, max_size=10000)
        self._roles = TTLCache(name="membership", default_ttl=cache_ttl, max_size=50000)

    @staticmethod
    def _role_key(room_id: str, user_id: str) -> str:
        return f"{room_id}:{user_id}"

    def invalidate(self, room_id: str, user_id: str | None = None) -> None:
        """Drop cached membership for a room, or for one member of it."""
        if user_id is None:
            self._rooms.delete(room_id)
            self._roles.invalidate_prefix(f"{room_id}:")
        else:
            self._roles.delete(self._role_key(room_id, user_id))

    # --- Reads ---

    async def get_room(self, room_id: str) -> Room:
        """Get a room.

        Raises:
            NotFound: If the room does not exist.
        """
        hit, room = self._rooms.get(room_id)
        if hit:
            return room

        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        self._rooms.set(room_id, room)
        return room

    async def get_role(self, room_id: str, user_id: str) -> str | None:
        """Role of a user in a room, or None if not a member.

        Only positive lookups are cached, so a user added by another process
        can act right away.
        """
        key = self._role_key(room_id, user_id)
        hit, role = self._roles.get(key)
        if hit:
            return role

        member = await self.store.get_member(room_id, user_id)
        if member is None:
            return None
        self._roles.set(key, member.role)
        return member.role

    async def is_member(self, room_id: str, user_id: str) -> bool:
        return await self.get_role(room_id, user_id) is not None

    async def require_member(self, room_id: str, user_id: str) -> str:
        """Check that a user belongs to an existing room.

        Returns:
            The user's role.

        Raises:
            NotFound: If the room does not exist.
            Unauthorized: If the user is not a member.
        """
        await self.get_room(room_id)
        role = await self.get_role(room_id, user_id)
        if role is None:
            raise Unauthorized(f"User {user_id} is not a member of room {room_id}")
        return role

    async def is_elevated(self, room_id: str, user_id: str) -> bool:
        return await self.get_role(room_id, user_id) in ELEVATED_ROLES

    async def members(self, room_id: str) -> list[Member]:
        """Members of a room in join order."""
        await self.get_room(room_id)
        return await self.store.get_room_members(room_id)

    async def member_ids(self, room_id: str) -> list[str]:
        return [m.user_id for m in await self.members(room_id)]

    async def rooms_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return await self.store.list_rooms_for_user(user_id)

    # --- Writes ---

    async def create_room(
        self,
        created_by: str,
        display_name: str | None = None,
        is_private: bool = False,
    ) -> Room:
        """Create a room owned by ``created_by``."""
        room = await self.store.create_room(created_by, display_name, is_private)
        self._rooms.set(room.room_id, room)
        self._roles.set(self._role_key(room.room_id, created_by), ROLE_OWNER)
        logger.info(f"Room {room.room_id} created by {created_by} (private={room.is_private})")
        return room

    async def add_member(
        self,
        room_id: str,
        user_id: str,
        role: str = ROLE_MEMBER,
        actor_id: str | None = None,
    ) -> Member:
        """Add a user to a room.

        Args:
            room_id: Room ID
            user_id: User to add
            role: Role to grant
            actor_id: User performing the change. None means an administrative
                call that bypasses role checks.

        Raises:
            NotFound: If the room or user does not exist.
            Unauthorized: If the actor may not add members with this role.
            ValidationError: If the role is unknown.
            Conflict: If the user is already a member.
        """
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}")

        room = await self.get_room(room_id)

        if actor_id is not None:
            actor_role = await self.get_role(room_id, actor_id)
            elevated = actor_role in ELEVATED_ROLES
            if room.is_private and not elevated:
                raise Unauthorized("Only owners and admins can add members to a private room")
            if role != ROLE_MEMBER and not elevated:
                raise Unauthorized(f"Only owners and admins can grant the {role} role")
            if actor_role is None and actor_id != user_id:
                raise Unauthorized(f"User {actor_id} is not a member of room {room_id}")

        member = await self.store.add_room_member(room_id, user_id, role)
        if member is None:
            raise Conflict(f"User {user_id} is already a member of room {room_id}")

        self._roles.set(self._role_key(room_id, user_id), member.role)
        logger.info(f"User {user_id} added to room {room_id} as {member.role}")
        return member

    async def remove_member(self, room_id: str, user_id: str, actor_id: str | None = None) -> None:
        """Remove a user from a room.

        Members may always remove themselves; removing someone else needs an
        owner or admin.

        Raises:
            NotFound: If the room does not exist or the user is not a member.
            Unauthorized: If the actor may not remove the user.
        """
        await self.get_room(room_id)

        if actor_id is not None and actor_id != user_id:
            if not await self.is_elevated(room_id, actor_id):
                raise Unauthorized("Only owners and admins can remove other members")

        removed = await self.store.remove_room_member(room_id, user_id)
        self.invalidate(room_id, user_id)
        if not removed:
            raise NotFound(f"User {user_id} is not a member of room {room_id}")
        logger.info(f"User {user_id} removed from room {room_id}")

    async def ensure_member(self, room_id: str, user_id: str) -> str:
        """Make sure a user may join a room, enrolling them in public rooms.

        Returns:
            The user's role.

        Raises:
            NotFound: If the room does not exist.
            Unauthorized: If the room is private and the user is not a member.
        """
        room = await self.get_room(room_id)
        role = await self.get_role(room_id, user_id)
        if role is not None:
            return role
        if room.is_private:
            raise Unauthorized(f"Room {room_id} is private")

        member = await self.store.add_room_member(room_id, user_id, ROLE_MEMBER)
        if member is None:
            # Enrolled concurrently by another connection or process
            role = await self.get_role(room_id, user_id)
            return role or ROLE_MEMBER
        self._roles.set(self._role_key(room_id, user_id), member.role)
        logger.info(f"User {user_id} joined public room {room_id}")
        return member.role
