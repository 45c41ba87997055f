from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from app.monitoring.metrics import (
    realtime_events_dropped_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)
from huddle.realtime import Event, EventBus, Topic, TransportUnavailableError

pytestmark = pytest.mark.anyio


class RecordingTransport:
    """Stand-in for the Redis relay that records or rejects publishes."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.node_id = None
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.handlers: dict[str, Any] = {}

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def subscribe(self, topic: str, handler) -> None:
        self.handlers[topic] = handler

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise TransportUnavailableError("Redis relay is unavailable")
        self.published.append((topic, payload))


@pytest.fixture(autouse=True)
def reset_realtime_metrics() -> None:
    for metric in (realtime_publish_errors_total, realtime_events_dropped_total, realtime_subscriptions):
        metric._samples.clear()
    yield
    for metric in (realtime_publish_errors_total, realtime_events_dropped_total, realtime_subscriptions):
        metric._samples.clear()


async def test_subscriber_receives_only_matching_channel_and_topic():
    bus = EventBus(node_id="node")
    subscription = bus.subscribe(Topic.NEW_MESSAGE, 1)

    assert await bus.publish(Event(Topic.NEW_MESSAGE, 2, {"id": 1})) == 0
    assert await bus.publish(Event(Topic.REMOVED_MESSAGE, 1, {"id": 1})) == 0
    assert await bus.publish(Event(Topic.NEW_MESSAGE, 1, {"id": 2})) == 1

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    assert event.payload == {"id": 2}
    subscription.close()


async def test_events_published_before_subscribing_are_not_replayed():
    bus = EventBus(node_id="node")
    await bus.publish(Event(Topic.NOTIFICATION, 1, {"message": "early"}))
    subscription = bus.subscribe("notification", 1)
    await bus.publish(Event(Topic.NOTIFICATION, 1, {"message": "late"}))

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    assert event.payload == {"message": "late"}
    subscription.close()


async def test_full_subscriber_queue_drops_events():
    bus = EventBus(node_id="node", queue_size=1)
    subscription = bus.subscribe(Topic.JOINED, 1)

    await bus.publish(Event(Topic.JOINED, 1, {"id": 1}))
    await bus.publish(Event(Topic.JOINED, 1, {"id": 2}))

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    assert event.payload == {"id": 1}
    assert realtime_events_dropped_total.value("joined") == 1.0
    subscription.close()


async def test_closing_a_subscription_ends_iteration_and_unregisters():
    bus = EventBus(node_id="node")
    received: list[Event] = []

    async with bus.subscribe(Topic.LEFT, 1) as subscription:
        assert bus.subscriber_count(Topic.LEFT) == 1
        await bus.publish(Event(Topic.LEFT, 1, {"id": 1}))

        async def consume() -> None:
            async for event in subscription:
                received.append(event)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        subscription.close()
        await asyncio.wait_for(consumer, timeout=1.0)

    assert bus.subscriber_count(Topic.LEFT) == 0
    assert realtime_subscriptions.value("left") == 0.0
    assert len(received) <= 1
    assert await bus.publish(Event(Topic.LEFT, 1, {"id": 2})) == 0


async def test_relay_failure_is_logged_and_local_delivery_still_happens(caplog):
    bus = EventBus(transport=RecordingTransport(fail=True), node_id="node")
    await bus.start()
    subscription = bus.subscribe(Topic.NEW_MESSAGE, 1)

    with caplog.at_level(logging.WARNING):
        delivered = await bus.publish(Event(Topic.NEW_MESSAGE, 1, {"id": 1}))

    assert delivered == 1
    assert realtime_publish_errors_total.value("new-message", "redis") == 1.0
    assert any("Failed to relay" in record.getMessage() for record in caplog.records)
    subscription.close()
    await bus.stop()


async def test_relayed_events_from_other_nodes_are_delivered_once():
    transport = RecordingTransport()
    bus = EventBus(transport=transport, node_id="node-a")
    await bus.start()
    subscription = bus.subscribe(Topic.NOTIFICATION, 3)

    await bus.publish(Event(Topic.NOTIFICATION, 3, {"message": "local"}))
    topic, envelope = transport.published[0]
    assert topic == "notification"
    assert envelope["origin"] == "node-a"

    handler = transport.handlers["notification"]
    await handler(envelope)
    await handler({"origin": "node-b", "event": Event(Topic.NOTIFICATION, 3, {"message": "remote"}).to_dict()})
    await handler({"origin": "node-b", "event": {"topic": "unknown"}})

    first = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    second = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    assert [first.payload["message"], second.payload["message"]] == ["local", "remote"]
    subscription.close()
    await bus.stop()
