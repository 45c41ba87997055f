"""Realtime event fan-out with an optional Redis relay between processes."""

from .bus import (  # noqa: F401
    Event,
    EventBus,
    Subscription,
    Topic,
    configure_realtime,
    get_event_bus,
    shutdown_realtime,
    startup_realtime,
)
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError  # noqa: F401

__all__ = [
    "configure_realtime",
    "get_event_bus",
    "startup_realtime",
    "shutdown_realtime",
    "Event",
    "EventBus",
    "Subscription",
    "Topic",
    "BrokerConfig",
    "RedisTransport",
    "TransportUnavailableError",
]
