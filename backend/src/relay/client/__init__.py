"""Client session helpers for the Relay messaging API."""

from .api import MessagingClient, MessagingClientError, UnreadCounts
from .cache import CachedMessage, CacheStats, MessageCache
from .config import ClientSettings, get_client_settings
from .status import UnreadStatus, UnreadStatusProvider
from .stream import EventStream, ReconnectBackoff, StreamAuthError

__all__ = [
    "MessagingClient",
    "MessagingClientError",
    "UnreadCounts",
    "CachedMessage",
    "CacheStats",
    "MessageCache",
    "ClientSettings",
    "get_client_settings",
    "UnreadStatus",
    "UnreadStatusProvider",
    "EventStream",
    "ReconnectBackoff",
    "StreamAuthError",
]
