"""Application service helpers."""

from .errors import (
    ForbiddenError,
    MessageValidationError,
    MessagingError,
    NotFoundError,
    TransientStoreError,
    UnauthorizedError,
)
from .unread import RecentUnreadItem, UnreadSnapshot, get_unread_snapshot, recent_unread

__all__ = [
    "MessagingError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "MessageValidationError",
    "TransientStoreError",
    "UnreadSnapshot",
    "RecentUnreadItem",
    "get_unread_snapshot",
    "recent_unread",
]
