"""Schemas for unread counts, notifications and read-state changes."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.models.enums import MessageKind

from .common import CamelModel
from .messages import SenderRead


class UnreadBreakdown(CamelModel):
    system: int = Field(0, ge=0)
    project: int = Field(0, ge=0)
    private: int = Field(0, ge=0)


class UnreadCountResponse(CamelModel):
    total: int = Field(0, ge=0)
    breakdown: UnreadBreakdown


class RecentUnreadMessage(CamelModel):
    id: int
    kind: MessageKind
    content: str
    preview: str
    created_at: datetime
    sender: SenderRead | None = None
    source: str
    conversation_id: str


class RecentUnreadResponse(CamelModel):
    messages: list[RecentUnreadMessage]
    total: int
    breakdown: UnreadBreakdown


class MarkReadRequest(CamelModel):
    message_id: int
    message_type: str


class MarkBatchReadRequest(CamelModel):
    message_ids: list[int]
    message_type: str


class MarkAllReadRequest(CamelModel):
    message_type: str = MessageKind.SYSTEM.value


class MarkReadResponse(CamelModel):
    success: bool = True
    marked_count: int = Field(0, ge=0)


class LastMessageRead(CamelModel):
    id: int
    content: str
    preview: str
    created_at: datetime
    sender: SenderRead | None = None


class ConversationUnreadRead(CamelModel):
    """Conversation list entry; ``id`` is the stream conversation id."""

    id: str = Field(validation_alias="conversation_id")
    kind: MessageKind
    target_id: int
    name: str
    unread_count: int = Field(0, ge=0)
    last_activity: datetime
    last_message: LastMessageRead | None = None
    project_id: int | None = None


class StreamTokenResponse(CamelModel):
    token: str
    expires_in: int
