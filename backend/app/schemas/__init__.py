"""Pydantic schemas for API payloads."""

from .messages import (
    ConversationCreate,
    MessageCreate,
    PrivateConversationRead,
    PrivateMessageRead,
    ProjectMessageRead,
    SenderRead,
    SystemMessageCreate,
    SystemMessageRead,
)
from .unread import (
    ConversationUnreadRead,
    LastMessageRead,
    MarkAllReadRequest,
    MarkBatchReadRequest,
    MarkReadRequest,
    MarkReadResponse,
    RecentUnreadMessage,
    RecentUnreadResponse,
    StreamTokenResponse,
    UnreadBreakdown,
    UnreadCountResponse,
)

__all__ = [
    "SenderRead",
    "SystemMessageCreate",
    "SystemMessageRead",
    "MessageCreate",
    "ProjectMessageRead",
    "PrivateMessageRead",
    "ConversationCreate",
    "PrivateConversationRead",
    "UnreadBreakdown",
    "UnreadCountResponse",
    "RecentUnreadMessage",
    "RecentUnreadResponse",
    "MarkReadRequest",
    "MarkBatchReadRequest",
    "MarkAllReadRequest",
    "MarkReadResponse",
    "StreamTokenResponse",
    "LastMessageRead",
    "ConversationUnreadRead",
]
