"""Metric definitions for the cache, the event bus and store transactions."""

from __future__ import annotations

from .registry import registry


cache_requests_total = registry.counter(
    "cache_requests_total",
    "Cache lookups by key kind and result (hit/miss).",
    label_names=("kind", "result"),
)

cache_writes_total = registry.counter(
    "cache_writes_total",
    "Cache writes by key kind; 'discarded' writes lost to a newer generation.",
    label_names=("kind", "outcome"),
)

cache_errors_total = registry.counter(
    "cache_errors_total",
    "Cache backend failures that were logged and swallowed.",
    label_names=("operation",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Events fanned out to local subscribers.",
    label_names=("topic", "origin"),
)

realtime_events_dropped_total = registry.counter(
    "realtime_events_dropped_total",
    "Events dropped because a subscriber queue was full.",
    label_names=("topic",),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failed attempts to relay an event to other processes.",
    label_names=("topic", "backend"),
)

realtime_subscriptions = registry.gauge(
    "realtime_subscriptions",
    "Live event subscriptions held by this process.",
    label_names=("topic",),
)

membership_transitions_total = registry.counter(
    "membership_transitions_total",
    "Committed membership transitions.",
    label_names=("transition",),
)

sessions_active = registry.gauge(
    "sessions_active",
    "Session mirrors held by this process.",
)
