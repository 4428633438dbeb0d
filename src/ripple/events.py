"""Fan-out bus for real-time chat events.

Delivers every event published on a topic to every subscriber of that topic,
whichever process holds the subscriber.

Architecture:
    - EventBus ABC defines the interface the core depends on
    - InMemoryEventBus dispatches directly for single-process deployments
    - RedisEventBus shares events between processes over Redis pub/sub with
      one pub/sub connection per process and local fan-out
    - Each Subscription owns a bounded buffer; when a slow consumer lets it
      fill up, the oldest unread event is dropped so publish never blocks

Subscribers only see events published after they subscribed. Anything missed
(late subscription, dropped events, broker outage) is recovered from
persistence with a history query.

Topic key format:
    - "room:{room_id}" for room traffic (messages, receipts, typing, presence,
      member removals)
    - "user:{user_id}" for a user's personal topic (presence)
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import BusUnavailable
from .metrics import metrics, timed_publish

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_SUBSCRIBER_BUFFER = 256


class EventType(str, Enum):
    MESSAGE_CREATED = "message-created"
    MESSAGE_UPDATED = "message-updated"
    MESSAGE_DELETED = "message-deleted"
    MESSAGE_REACTION = "message-reaction"
    DELIVERY_UPDATE = "delivery-update"
    PRESENCE = "presence"
    TYPING = "typing"
    MEMBER_REMOVED = "member-removed"


def room_topic(room_id: str) -> str:
    return f"room:{room_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    """Envelope for everything carried by the bus."""

    type: str
    topic: str
    payload: dict[str, Any]
    timestamp: str = field(default_factory=_now)
    origin: str = ""
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str | bytes) -> "Event":
        """Parse an envelope.

        Raises:
            ValueError: If the data is not a valid envelope.
        """
        try:
            raw = json.loads(data)
            return cls(
                type=raw["type"],
                topic=raw["topic"],
                payload=raw.get("payload") or {},
                timestamp=raw.get("timestamp") or _now(),
                origin=raw.get("origin") or "",
                schema_version=int(raw.get("schema_version", SCHEMA_VERSION)),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid event envelope: {e}") from e


def build_event(
    event_type: EventType | str,
    topic: str,
    payload: dict[str, Any],
    origin: str = "",
) -> Event:
    """Build an event envelope for a topic."""
    type_value = event_type.value if isinstance(event_type, EventType) else str(event_type)
    return Event(type=type_value, topic=topic, payload=payload, origin=origin)


class Subscription:
    """Async iterator over the events of one topic.

    Iteration suspends until an event arrives and only ends once the
    subscription is closed. Buffered events are discarded on close.
    """

    def __init__(
        self,
        topic: str,
        maxlen: int = DEFAULT_SUBSCRIBER_BUFFER,
        on_close: Callable[["Subscription"], Awaitable[None]] | None = None,
    ):
        self.topic = topic
        self.maxlen = maxlen
        self.dropped = 0
        self._buffer: deque[Event] = deque(maxlen=maxlen)
        self._ready = asyncio.Event()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of buffered, unread events."""
        return len(self._buffer)

    def push(self, event: Event) -> None:
        """Buffer an event, dropping the oldest one when full. Never blocks."""
        if self._closed:
            return
        if len(self._buffer) >= self.maxlen:
            self.dropped += 1
            metrics.increment("events_dropped")
            if self.dropped == 1:
                logger.warning(
                    f"Subscriber buffer full on {self.topic}, dropping oldest events"
                )
        self._buffer.append(event)
        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

    async def get(self, timeout: float | None = None) -> Event:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``.
            StopAsyncIteration: If the subscription is closed.
        """
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def close(self) -> None:
        """Unsubscribe and discard buffered events."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._ready.set()
        if self._on_close is not None:
            await self._on_close(self)


class EventBus(ABC):
    """Abstract fan-out bus.

    Implementations deliver at least once to every subscriber registered at
    publish time, in the order the bus received the events of a topic.
    """

    node_id: str = ""

    @abstractmethod
    async def publish(self, topic: str, event: Event) -> None:
        """Publish an event on a topic.

        Raises:
            BusUnavailable: If the bus cannot accept the event.
        """

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        """Subscribe to a topic. Only events published afterwards are seen."""

    @abstractmethod
    async def close(self) -> None:
        """Close every subscription and release connections."""

    def _stamp(self, topic: str, event: Event) -> Event:
        event.topic = topic
        if not event.origin:
            event.origin = self.node_id
        return event


class InMemoryEventBus(EventBus):
    """Single-process bus with direct dispatch.

    All operations run on the event loop, so publish hands each event to the
    subscriber buffers before returning.
    """

    def __init__(self, subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER, node_id: str = "local"):
        self.subscriber_buffer = subscriber_buffer
        self.node_id = node_id
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._closed = False

    async def publish(self, topic: str, event: Event) -> None:
        if self._closed:
            raise BusUnavailable("Event bus is closed")
        event = self._stamp(topic, event)
        with timed_publish(event.type):
            for subscription in list(self._subscribers.get(topic, ())):
                subscription.push(event)
        metrics.increment("events_published")

    async def subscribe(self, topic: str) -> Subscription:
        if self._closed:
            raise BusUnavailable("Event bus is closed")
        subscription = Subscription(topic, self.subscriber_buffer, on_close=self._remove)
        self._subscribers[topic].append(subscription)
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def close(self) -> None:
        self._closed = True
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                await subscription.close()
        self._subscribers.clear()


class RedisEventBus(EventBus):
    """Bus shared by every process connected to one Redis server.

    Each process keeps a single pub/sub connection, subscribes a Redis channel
    per topic that has at least one local subscriber, and fans incoming
    messages out to its local subscriptions. A listener task reads the
    pub/sub connection; on connection errors it backs off and resumes, and
    events published during the gap are missed.

    Args:
        redis: Async Redis client. Use ``from_url`` to let the bus own it.
        subscriber_buffer: Per-subscription buffer size
        publish_retries: Publish attempts before BusUnavailable
        publish_retry_delay: Initial backoff, doubled after each failed attempt
        channel_prefix: Prefix separating ripple channels from other users of the server
        node_id: Identity stamped on published events
    """

    def __init__(
        self,
        redis: Redis,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
        publish_retries: int = 3,
        publish_retry_delay: float = 0.05,
        channel_prefix: str = "ripple:",
        node_id: str = "",
        owns_client: bool = False,
    ):
        self._redis = redis
        self.subscriber_buffer = subscriber_buffer
        self.publish_retries = max(1, publish_retries)
        self.publish_retry_delay = publish_retry_delay
        self.channel_prefix = channel_prefix
        self.node_id = node_id
        self._owns_client = owns_client
        self._pubsub = None
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._listener: asyncio.Task | None = None
        self._closed = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisEventBus":
        """Create a bus with its own Redis client."""
        redis = Redis.from_url(url, decode_responses=True)
        return cls(redis, owns_client=True, **kwargs)

    def _channel(self, topic: str) -> str:
        return f"{self.channel_prefix}{topic}"

    def _topic(self, channel: str | bytes) -> str:
        if isinstance(channel, bytes):
            channel = channel.decode()
        return channel[len(self.channel_prefix) :]

    async def publish(self, topic: str, event: Event) -> None:
        if self._closed:
            raise BusUnavailable("Event bus is closed")

        payload = self._stamp(topic, event).to_json()
        channel = self._channel(topic)
        delay = self.publish_retry_delay
        last_error: Exception | None = None

        with timed_publish(event.type):
            for attempt in range(1, self.publish_retries + 1):
                try:
                    receivers = await self._redis.publish(channel, payload)
                    metrics.increment("events_published")
                    logger.debug(f"Published {event.type} to {channel} (receivers: {receivers})")
                    return
                except (RedisError, OSError) as e:
                    last_error = e
                    logger.warning(
                        f"Publish to {channel} failed "
                        f"(attempt {attempt}/{self.publish_retries}): {e}"
                    )
                    if attempt < self.publish_retries:
                        await asyncio.sleep(delay)
                        delay *= 2

            metrics.increment("publish_failures")
            raise BusUnavailable(f"Could not publish to {channel}: {last_error}") from last_error

    async def subscribe(self, topic: str) -> Subscription:
        if self._closed:
            raise BusUnavailable("Event bus is closed")

        subscription = Subscription(topic, self.subscriber_buffer, on_close=self._remove)
        async with self._lock:
            if self._pubsub is None:
                self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            if not self._subscribers.get(topic):
                try:
                    await self._pubsub.subscribe(self._channel(topic))
                except (RedisError, OSError) as e:
                    raise BusUnavailable(f"Could not subscribe to {topic}: {e}") from e
                logger.debug(f"Subscribed to channel {self._channel(topic)}")
            self._subscribers[topic].append(subscription)
            if self._listener is None or self._listener.done():
                self._listener = asyncio.create_task(self._listen(), name="ripple-redis-listener")
                logger.info("Started Redis event listener")
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        if self._closed:
            return
        async with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
            if subscribers:
                return
            self._subscribers.pop(subscription.topic, None)
            try:
                await self._pubsub.unsubscribe(self._channel(subscription.topic))
            except (RedisError, OSError) as e:
                logger.warning(f"Failed to unsubscribe from {subscription.topic}: {e}")

    def _dispatch(self, message: dict[str, Any]) -> None:
        if message.get("type") != "message":
            return
        topic = self._topic(message["channel"])
        try:
            event = Event.from_json(message["data"])
        except ValueError as e:
            logger.warning(f"Discarding malformed event on {topic}: {e}")
            return
        for subscription in list(self._subscribers.get(topic, ())):
            subscription.push(event)

    async def _listen(self) -> None:
        initial_backoff = max(self.publish_retry_delay, 0.05)
        backoff = initial_backoff
        while not self._closed:
            if not self._subscribers:
                await asyncio.sleep(0.05)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except (RedisError, OSError) as e:
                # The pub/sub connection re-subscribes its channels when it reconnects
                logger.warning(f"Redis subscriber error: {e}; retrying in {backoff:.2f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 5.0)
                continue
            backoff = initial_backoff
            if message is not None:
                self._dispatch(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                await subscription.close()
        self._subscribers.clear()

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._owns_client:
            await self._redis.aclose()
        logger.info("Closed Redis event bus")
