"""Session registry: live connections, joined rooms and presence.

Connections are ephemeral and live only in this process. Each connection
follows ``connecting -> authenticated -> disconnected``; a disconnected
connection ID can never be reused.

Joining a room subscribes the connection to the room topic and starts a
forwarding task that hands every event to the connection's ``deliver``
callback. Disconnecting cancels those tasks and closes the subscriptions
before returning, so nothing reaches the connection afterwards.

Presence:
    A user is online while at least one of their connections is
    authenticated. Presence events are published on the user's personal
    topic and on every room they belong to, exactly when the count goes
    0 -> 1 or 1 -> 0. Transitions are published one at a time per user and
    only when the status differs from the last one published. With a grace
    period, the offline event is delayed and a reconnect within the window
    suppresses both transitions.

Removing a member evicts their connections from the room, here and in
every other process listening on the room topic.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from collections import OrderedDict, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import BusUnavailable, Conflict, NotFound, PersistenceError, RippleError, Unauthorized
from .events import Event, EventBus, EventType, Subscription, build_event, room_topic, user_topic
from .membership import RoomMembershipStore
from .metrics import metrics

logger = logging.getLogger(__name__)

# Deliver callback: (connection_id, event)
Deliver = Callable[[str, Event], Awaitable[None]]

# Disconnected IDs remembered to refuse reuse
MAX_RETIRED_CONNECTIONS = 10000


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    connection_id: str
    user_id: str | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    rooms: set[str] = field(default_factory=set)
    node_id: str = ""
    connected_at: str | None = None
    deliver: Deliver | None = field(default=None, repr=False)
    subscriptions: dict[str, Subscription] = field(default_factory=dict, repr=False)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "state": self.state.value,
            "rooms": sorted(self.rooms),
            "node_id": self.node_id,
            "connected_at": self.connected_at,
        }


class SessionRegistry:
    """Process-wide registry of connections.

    Args:
        bus: Fan-out bus for room subscriptions and presence events
        membership: Room membership store used to authorize joins
        presence_grace_seconds: Delay before an offline transition is published
        node_id: Identity of this process, recorded on each connection
    """

    def __init__(
        self,
        bus: EventBus,
        membership: RoomMembershipStore,
        presence_grace_seconds: float = 0.0,
        node_id: str = "",
    ):
        self.bus = bus
        self.membership = membership
        self.presence_grace_seconds = presence_grace_seconds
        self.node_id = node_id
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        self._by_user: defaultdict[str, set[str]] = defaultdict(set)
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._pending_offline: dict[str, asyncio.Task] = {}
        # Last status published per user; absent means offline
        self._announced: dict[str, str] = {}
        self._presence_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # --- Lookups ---

    def get(self, connection_id: str) -> Connection:
        """Get a live connection.

        Raises:
            NotFound: If no such connection is registered.
        """
        with self._lock:
            conn = self._connections.get(connection_id)
        if conn is None:
            raise NotFound(f"Connection {connection_id} not found")
        return conn

    def connections_for(self, user_id: str) -> list[Connection]:
        with self._lock:
            return [self._connections[cid] for cid in self._by_user.get(user_id, ())]

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))

    def online_users(self) -> list[str]:
        with self._lock:
            return sorted(user_id for user_id, cids in self._by_user.items() if cids)

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def _require_authenticated(self, connection_id: str) -> Connection:
        conn = self.get(connection_id)
        if conn.state != ConnectionState.AUTHENTICATED:
            raise Unauthorized(f"Connection {connection_id} is not authenticated")
        return conn

    def _retire(self, connection_id: str) -> None:
        """Remember a disconnected ID. Must be called with lock held."""
        self._retired[connection_id] = None
        while len(self._retired) > MAX_RETIRED_CONNECTIONS:
            self._retired.popitem(last=False)

    # --- Lifecycle ---

    def begin(self, connection_id: str) -> Connection:
        """Register a connection that has not authenticated yet.

        Raises:
            Conflict: If the ID is already in use or was used before.
        """
        with self._lock:
            if connection_id in self._connections or connection_id in self._retired:
                raise Conflict(f"Connection {connection_id} already exists")
            conn = Connection(connection_id=connection_id, node_id=self.node_id)
            self._connections[connection_id] = conn
        return conn

    async def connect(
        self,
        user_id: str,
        connection_id: str,
        deliver: Deliver | None = None,
    ) -> Connection:
        """Bind an authenticated user to a connection.

        The connection may have been registered with ``begin`` first.

        Raises:
            Conflict: If the connection is already authenticated or was disconnected.
        """
        with self._lock:
            if connection_id in self._retired:
                raise Conflict(f"Connection {connection_id} was disconnected")
            conn = self._connections.get(connection_id)
            if conn is not None and conn.state != ConnectionState.CONNECTING:
                raise Conflict(f"Connection {connection_id} is already authenticated")
            if conn is None:
                conn = Connection(connection_id=connection_id, node_id=self.node_id)
                self._connections[connection_id] = conn

            conn.user_id = user_id
            conn.deliver = deliver
            conn.state = ConnectionState.AUTHENTICATED
            conn.connected_at = datetime.now(timezone.utc).isoformat()

            user_connections = self._by_user[user_id]
            user_connections.add(connection_id)
            came_online = len(user_connections) == 1
            pending = self._pending_offline.pop(user_id, None) if came_online else None

        metrics.increment("connections_opened")
        logger.info(f"Connection {connection_id} authenticated as {user_id}")

        if came_online:
            if pending is not None:
                # Reconnected within the grace window; offline was never announced
                pending.cancel()
            await self._sync_presence(user_id)
        return conn

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a connection. Disconnecting twice is a no-op.

        Raises:
            NotFound: If the connection was never registered.
        """
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                if connection_id in self._retired:
                    return
                raise NotFound(f"Connection {connection_id} not found")

            was_authenticated = conn.state == ConnectionState.AUTHENTICATED
            conn.state = ConnectionState.DISCONNECTED
            self._retire(connection_id)

            subscriptions = list(conn.subscriptions.values())
            tasks = list(conn.tasks.values())
            conn.subscriptions.clear()
            conn.tasks.clear()
            conn.rooms.clear()

            went_offline = False
            if was_authenticated and conn.user_id is not None:
                user_connections = self._by_user.get(conn.user_id)
                if user_connections is not None:
                    user_connections.discard(connection_id)
                    if not user_connections:
                        del self._by_user[conn.user_id]
                        went_offline = True

        await self._stop_forwarding(tasks, subscriptions)

        if was_authenticated:
            metrics.increment("connections_closed")
        logger.info(f"Connection {connection_id} disconnected")

        if went_offline:
            await self._announce_offline(conn.user_id)

    async def close(self) -> None:
        """Disconnect every connection and cancel pending presence timers."""
        with self._lock:
            connection_ids = list(self._connections)
            pending = list(self._pending_offline.values())
            self._pending_offline.clear()
        for task in pending:
            task.cancel()
        for connection_id in connection_ids:
            await self.disconnect(connection_id)

    # --- Rooms ---

    async def join_room(self, connection_id: str, room_id: str) -> None:
        """Join a room on a connection and start forwarding its events.

        Raises:
            NotFound: If the connection or room does not exist.
            Unauthorized: If the room is private and the user is not a member.
            Conflict: If the room is already joined on this connection.
        """
        conn = self._require_authenticated(connection_id)
        if room_id in conn.rooms:
            raise Conflict(f"Room {room_id} already joined on connection {connection_id}")

        await self.membership.ensure_member(room_id, conn.user_id)
        subscription = await self.bus.subscribe(room_topic(room_id))

        with self._lock:
            error: Exception | None = None
            if conn.state != ConnectionState.AUTHENTICATED:
                error = Unauthorized(f"Connection {connection_id} is not authenticated")
            elif room_id in conn.rooms:
                error = Conflict(f"Room {room_id} already joined on connection {connection_id}")
            else:
                conn.rooms.add(room_id)
                conn.subscriptions[room_id] = subscription
                conn.tasks[room_id] = asyncio.create_task(
                    self._forward(conn, subscription),
                    name=f"forward-{connection_id}-{room_id}",
                )

        if error is not None:
            await subscription.close()
            raise error
        logger.debug(f"Connection {connection_id} joined room {room_id}")

    async def leave_room(self, connection_id: str, room_id: str) -> None:
        """Stop forwarding a room's events to a connection.

        Raises:
            NotFound: If the connection is unknown or the room is not joined on it.
        """
        conn = self._require_authenticated(connection_id)
        if not await self._detach(conn, room_id):
            raise NotFound(f"Room {room_id} is not joined on connection {connection_id}")
        logger.debug(f"Connection {connection_id} left room {room_id}")

    async def remove_member(self, room_id: str, user_id: str, actor_id: str | None = None) -> None:
        """Remove a room member and cut off their live connections to the room.

        Local connections are evicted before this returns. A member-removed
        event is then published on the room topic so the remaining members
        hear about it and other processes evict their own connections.

        Raises:
            NotFound: If the room does not exist or the user is not a member.
            Unauthorized: If the actor may not remove the user.
        """
        await self.membership.remove_member(room_id, user_id, actor_id=actor_id)

        topic = room_topic(room_id)
        event = build_event(
            EventType.MEMBER_REMOVED,
            topic,
            {"room_id": room_id, "user_id": user_id, "removed_by": actor_id or user_id},
        )
        await self.evict(user_id, room_id, event)
        try:
            await self.bus.publish(topic, event)
        except BusUnavailable as e:
            logger.warning(f"Could not announce removal of {user_id} from room {room_id}: {e}")

    async def evict(self, user_id: str, room_id: str, event: Event | None = None) -> int:
        """Detach a room from every local connection of a user.

        Each evicted connection is handed ``event`` once its forwarding has
        stopped.

        Returns:
            Number of connections evicted.
        """
        evicted = 0
        for conn in self.connections_for(user_id):
            if await self._detach(conn, room_id):
                evicted += 1
                if event is not None:
                    await self._hand_off(conn, event)
        if evicted:
            logger.info(f"Evicted {evicted} connection(s) of {user_id} from room {room_id}")
        return evicted

    async def set_typing(self, connection_id: str, room_id: str, is_typing: bool) -> None:
        """Broadcast a typing indicator to a joined room.

        Raises:
            Unauthorized: If the room is not joined on this connection.
        """
        conn = self._require_authenticated(connection_id)
        if room_id not in conn.rooms:
            raise Unauthorized(f"Room {room_id} is not joined on connection {connection_id}")

        topic = room_topic(room_id)
        event = build_event(
            EventType.TYPING,
            topic,
            {"user_id": conn.user_id, "room_id": room_id, "is_typing": is_typing},
        )
        try:
            await self.bus.publish(topic, event)
        except BusUnavailable as e:
            logger.warning(f"Dropped typing indicator for room {room_id}: {e}")

    # --- Internals ---

    async def _forward(self, conn: Connection, subscription: Subscription) -> None:
        async for event in subscription:
            if (
                event.type == EventType.MEMBER_REMOVED.value
                and event.payload.get("user_id") == conn.user_id
            ):
                room_id = event.payload["room_id"]
                if await self._still_member(room_id, conn.user_id):
                    continue
                if await self._detach(conn, room_id):
                    await self._hand_off(conn, event)
                return
            await self._hand_off(conn, event)

    async def _still_member(self, room_id: str, user_id: str) -> bool:
        # Removal may have happened in another process; skip the cached role
        self.membership.invalidate(room_id, user_id)
        try:
            return await self.membership.is_member(room_id, user_id)
        except RippleError as e:
            logger.warning(f"Could not check membership of {user_id} in room {room_id}: {e}")
            return False

    async def _hand_off(self, conn: Connection, event: Event) -> None:
        if conn.deliver is None:
            return
        try:
            await conn.deliver(conn.connection_id, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Delivery of {event.type} to connection {conn.connection_id} failed: {e}"
            )

    async def _detach(self, conn: Connection, room_id: str) -> bool:
        """Stop forwarding a room to a connection. False if it was not joined."""
        with self._lock:
            if room_id not in conn.rooms:
                return False
            conn.rooms.discard(room_id)
            subscription = conn.subscriptions.pop(room_id, None)
            task = conn.tasks.pop(room_id, None)

        await self._stop_forwarding(
            [task] if task is not None else [],
            [subscription] if subscription is not None else [],
        )
        return True

    async def _stop_forwarding(
        self,
        tasks: list[asyncio.Task],
        subscriptions: list[Subscription],
    ) -> None:
        current = asyncio.current_task()
        others = [task for task in tasks if task is not current]
        for task in others:
            task.cancel()
        for subscription in subscriptions:
            await subscription.close()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

    async def _announce_offline(self, user_id: str) -> None:
        if self.presence_grace_seconds <= 0:
            await self._sync_presence(user_id)
            return
        task = asyncio.create_task(self._offline_after_grace(user_id))
        task.add_done_callback(self._log_task_error)
        with self._lock:
            self._pending_offline[user_id] = task

    async def _offline_after_grace(self, user_id: str) -> None:
        await asyncio.sleep(self.presence_grace_seconds)
        with self._lock:
            if self._pending_offline.get(user_id) is not asyncio.current_task():
                return
            del self._pending_offline[user_id]
        await self._sync_presence(user_id)

    def _presence_lock(self, user_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._presence_locks.get(user_id)
            if lock is None:
                lock = asyncio.Lock()
                self._presence_locks[user_id] = lock
            return lock

    async def _sync_presence(self, user_id: str) -> None:
        """Publish the user's current status if it differs from the last one sent.

        Transitions for one user are serialized, so a reconnect racing a
        disconnect never leaves observers with a stale status.
        """
        async with self._presence_lock(user_id):
            with self._lock:
                status = "online" if self._by_user.get(user_id) else "offline"
                if self._announced.get(user_id, "offline") == status:
                    return
                if status == "online":
                    self._announced[user_id] = status
                else:
                    del self._announced[user_id]
            await self._publish_presence(user_id, status)

    @staticmethod
    def _log_task_error(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Presence task failed: {error}")

    async def _publish_presence(self, user_id: str, status: str) -> None:
        payload = {"user_id": user_id, "status": status}
        topics = [user_topic(user_id)]
        try:
            rooms = await self.membership.rooms_for_user(user_id)
            topics.extend(room_topic(room["room_id"]) for room in rooms)
        except PersistenceError as e:
            logger.warning(f"Could not load rooms for presence of {user_id}: {e}")

        for topic in topics:
            try:
                await self.bus.publish(topic, build_event(EventType.PRESENCE, topic, payload))
            except BusUnavailable as e:
                logger.warning(f"Dropped presence update on {topic}: {e}")
        logger.info(f"User {user_id} is {status}")
