"""ChatHub: one process' worth of wired-up ripple components.

Usage:
    # From the environment (RIPPLE_DB, RIPPLE_REDIS_URL, ...)
    hub = ChatHub.from_options(RippleOptions.from_env())

    # Ephemeral hub for tests
    hub = ChatHub.in_memory()

    user = await hub.store.create_user(display_name="Alice")
    room = await hub.membership.create_room(user["user_id"])
    await hub.pipeline.submit(room.room_id, user["user_id"], "hello")

    await hub.close()
"""

from __future__ import annotations

import logging

from .auth_provider import CredentialValidator
from .delivery import DeliveryTracker
from .events import EventBus, InMemoryEventBus, RedisEventBus
from .gateway import ConnectionGateway
from .membership import RoomMembershipStore
from .options import RippleOptions
from .pipeline import MessagePipeline
from .sessions import SessionRegistry
from .store import SqliteStore, Store

logger = logging.getLogger(__name__)


class ChatHub:
    """Wires store, bus and the core components together.

    Components only depend on the interfaces they are handed, so a hub can
    be built around any Store and EventBus.
    """

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        options: RippleOptions | None = None,
        validator: CredentialValidator | None = None,
    ):
        self.options = options or RippleOptions()
        self.store = store
        self.bus = bus
        self.membership = RoomMembershipStore(store, cache_ttl=self.options.membership_cache_ttl)
        self.pipeline = MessagePipeline(
            store,
            self.membership,
            bus,
            max_content_length=self.options.max_content_length,
            max_attachments=self.options.max_attachments,
            history_page_limit=self.options.history_page_limit,
        )
        self.tracker = DeliveryTracker(store, self.membership, bus)
        self.registry = SessionRegistry(
            bus,
            self.membership,
            presence_grace_seconds=self.options.presence_grace_seconds,
            node_id=self.options.node_id,
        )
        self.validator = validator or CredentialValidator(store)
        self.gateway = ConnectionGateway(self.validator, self.registry, self.pipeline, self.tracker)
        self._closed = False

    @classmethod
    def from_options(cls, options: RippleOptions) -> "ChatHub":
        """Build a hub with the store and bus the options describe."""
        store = SqliteStore(options.db_path)
        bus: EventBus
        if options.is_distributed():
            assert options.redis_url is not None
            bus = RedisEventBus.from_url(
                options.redis_url,
                subscriber_buffer=options.subscriber_buffer,
                publish_retries=options.publish_retries,
                publish_retry_delay=options.publish_retry_delay,
                node_id=options.node_id,
            )
        else:
            bus = InMemoryEventBus(
                subscriber_buffer=options.subscriber_buffer, node_id=options.node_id
            )
        logger.info(
            f"ChatHub {options.node_id} using {type(store).__name__} and {type(bus).__name__}"
        )
        return cls(store, bus, options=options)

    @classmethod
    def in_memory(cls, options: RippleOptions | None = None) -> "ChatHub":
        """Create an ephemeral single-process hub (testing)."""
        options = options or RippleOptions()
        bus = InMemoryEventBus(subscriber_buffer=options.subscriber_buffer, node_id=options.node_id)
        return cls(SqliteStore.in_memory(), bus, options=options)

    async def close(self) -> None:
        """Disconnect every session, then close the bus and the store."""
        if self._closed:
            return
        self._closed = True
        await self.registry.close()
        await self.bus.close()
        self.store.close()
        logger.info(f"ChatHub {self.options.node_id} closed")
