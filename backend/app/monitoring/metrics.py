"""Metric definitions for message delivery and unread tracking."""

from __future__ import annotations

from .registry import registry


delivery_active_connections = registry.gauge(
    "delivery_active_connections",
    "Number of open realtime delivery connections handled locally.",
    label_names=("transport",),
)

delivery_events_total = registry.counter(
    "delivery_events_total",
    "Count of events written to realtime delivery connections.",
    label_names=("type",),
)

delivery_write_failures_total = registry.counter(
    "delivery_write_failures_total",
    "Number of delivery writes that failed and closed their connection.",
    label_names=("reason",),
)

delivery_relay_errors_total = registry.counter(
    "delivery_relay_errors_total",
    "Failures talking to the cross-node Redis relay.",
    label_names=("reason",),
)

unread_snapshots_total = registry.counter(
    "unread_snapshots_total",
    "Number of unread snapshots computed.",
)

read_marks_total = registry.counter(
    "read_marks_total",
    "Messages transitioned from unread to read.",
    label_names=("kind",),
)

store_retries_total = registry.counter(
    "store_retries_total",
    "Read-state writes retried after a transient store failure.",
    label_names=("outcome",),
)
