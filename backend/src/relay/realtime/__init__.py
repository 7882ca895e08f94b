"""Realtime delivery of message and read events."""

from .managers import (  # noqa: F401
    DeliveryChannel,
    get_delivery_channel,
    get_registry,
    shutdown_realtime,
    startup_realtime,
)
from .registry import ConnectionState, DeliveryReport, DeliveryRegistry, StreamConnection  # noqa: F401

__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_delivery_channel",
    "get_registry",
    "DeliveryChannel",
    "DeliveryRegistry",
    "DeliveryReport",
    "StreamConnection",
    "ConnectionState",
]
