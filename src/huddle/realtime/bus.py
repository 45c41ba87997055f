"""Topic based fan-out of channel events to live subscribers.

Delivery is in-memory and at-most-once: a subscriber only sees events
published while it is registered, and a subscriber whose queue is full misses
the event. Nothing is buffered for absent subscribers or replayed later.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Set

from app.config import get_settings
from app.monitoring.metrics import (
    realtime_events_dropped_total,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)

from .transport import BrokerConfig, RedisTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Event topics clients can subscribe to."""

    NEW_MESSAGE = "new-message"
    REMOVED_MESSAGE = "removed-message"
    NOTIFICATION = "notification"
    JOINED = "joined"
    LEFT = "left"


@dataclass(frozen=True, slots=True)
class Event:
    """Ephemeral channel event."""

    topic: Topic
    channel_id: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"topic": self.topic.value, "channel_id": self.channel_id, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            topic=Topic(data["topic"]),
            channel_id=int(data["channel_id"]),
            payload=dict(data.get("payload") or {}),
        )


_CLOSED = object()


class Subscription:
    """Live, non-restartable stream of events for one topic and channel."""

    def __init__(self, bus: "EventBus", topic: Topic, channel_id: int, queue_size: int) -> None:
        self._bus = bus
        self.topic = topic
        self.channel_id = channel_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: Event) -> bool:
        return event.topic is self.topic and event.channel_id == self.channel_id

    def offer(self, event: Event) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._discard(self)
        # Wake a pending consumer; pending events are dropped with the subscription.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Fans events out to local subscribers and optionally relays them via Redis."""

    def __init__(
        self,
        *,
        transport: RedisTransport | None = None,
        node_id: str | None = None,
        queue_size: int = 256,
    ) -> None:
        self._transport = transport
        self._node_id = node_id or (transport.node_id if transport else None) or uuid.uuid4().hex
        self._queue_size = queue_size
        self._subscriptions: Dict[Topic, Set[Subscription]] = {topic: set() for topic in Topic}
        self._relaying = False

    @property
    def node_id(self) -> str:
        return self._node_id

    def subscribe(self, topic: Topic | str, channel_id: int) -> Subscription:
        """Register a subscriber immediately; events published afterwards are delivered."""

        topic = Topic(topic)
        subscription = Subscription(self, topic, channel_id, self._queue_size)
        self._subscriptions[topic].add(subscription)
        realtime_subscriptions.labels(topic.value).inc()
        return subscription

    def subscriber_count(self, topic: Topic | str) -> int:
        return len(self._subscriptions[Topic(topic)])

    async def publish(self, event: Event) -> int:
        """Deliver ``event`` locally and relay it; returns the local delivery count.

        Relay failures are logged and counted, never raised.
        """

        delivered = self._deliver(event, origin="local")
        if self._transport is not None and self._relaying:
            envelope = {"origin": self._node_id, "event": event.to_dict()}
            try:
                await self._transport.publish(event.topic.value, envelope)
            except TransportUnavailableError:
                logger.warning(
                    "Failed to relay %s event",
                    event.topic.value,
                    exc_info=True,
                    extra={"channel_id": event.channel_id},
                )
                realtime_publish_errors_total.labels(event.topic.value, "redis").inc()
        return delivered

    async def start(self) -> None:
        if self._transport is None:
            return
        await self._transport.start()
        for topic in Topic:
            await self._transport.subscribe(topic.value, self._on_relayed)
        self._relaying = True
        logger.info("Realtime relay started", extra={"node_id": self._node_id})

    async def stop(self) -> None:
        for subscriptions in self._subscriptions.values():
            for subscription in list(subscriptions):
                subscription.close()
        if self._transport is not None:
            await self._transport.stop()
        self._relaying = False

    async def _on_relayed(self, envelope: dict[str, Any]) -> None:
        if envelope.get("origin") == self._node_id:
            return
        try:
            event = Event.from_dict(envelope["event"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarded malformed relayed event")
            return
        self._deliver(event, origin="relay")

    def _deliver(self, event: Event, *, origin: str) -> int:
        delivered = 0
        for subscription in list(self._subscriptions[event.topic]):
            if not subscription.matches(event):
                continue
            if subscription.offer(event):
                delivered += 1
            else:
                realtime_events_dropped_total.labels(event.topic.value).inc()
        realtime_events_total.labels(event.topic.value, origin).inc()
        return delivered

    def _discard(self, subscription: Subscription) -> None:
        bucket = self._subscriptions[subscription.topic]
        if subscription in bucket:
            bucket.discard(subscription)
            realtime_subscriptions.labels(subscription.topic.value).dec()


_bus: EventBus | None = None


def configure_realtime(bus: EventBus | None = None) -> EventBus:
    """Install ``bus`` (or one built from settings) as the process-wide bus."""

    global _bus
    if bus is None:
        settings = get_settings()
        transport = None
        if settings.realtime_redis_url:
            transport = RedisTransport(
                BrokerConfig(
                    redis_url=settings.realtime_redis_url,
                    redis_prefix=settings.realtime_redis_prefix,
                    node_id=settings.realtime_node_id,
                )
            )
        bus = EventBus(
            transport=transport,
            node_id=settings.realtime_node_id,
            queue_size=settings.subscriber_queue_size,
        )
    _bus = bus
    return bus


def get_event_bus() -> EventBus:
    if _bus is None:
        return configure_realtime()
    return _bus


async def startup_realtime() -> None:
    bus = get_event_bus()
    try:
        await bus.start()
    except TransportUnavailableError:
        # Local fan-out keeps working; cross-process relay stays off.
        logger.exception("Realtime relay unavailable; continuing with local delivery only")


async def shutdown_realtime() -> None:
    if _bus is not None:
        await _bus.stop()
