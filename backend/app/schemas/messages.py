"""Schemas related to chat messages and conversations."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.models.enums import MessageKind

from .common import CamelModel


class SenderRead(CamelModel):
    """Lightweight author information for displaying messages."""

    id: int
    name: str | None = None
    email: str


class SystemMessageCreate(CamelModel):
    title: str = Field(..., max_length=255)
    content: str
    is_global: bool = False
    recipient_ids: list[int] = Field(default_factory=list)


class SystemMessageRead(CamelModel):
    id: int
    kind: MessageKind = MessageKind.SYSTEM
    title: str
    content: str
    is_global: bool
    sender_id: int | None = None
    sender: SenderRead | None = None
    created_at: datetime


class MessageCreate(CamelModel):
    content: str


class ProjectMessageRead(CamelModel):
    id: int
    kind: MessageKind = MessageKind.PROJECT
    project_id: int
    chat_id: int
    sender_id: int
    sender: SenderRead | None = None
    content: str
    created_at: datetime


class PrivateMessageRead(CamelModel):
    id: int
    kind: MessageKind = MessageKind.PRIVATE
    conversation_id: int
    sender_id: int
    receiver_id: int
    sender: SenderRead | None = None
    content: str
    created_at: datetime
    is_read: bool = False
    read_at: datetime | None = None


class ConversationCreate(CamelModel):
    participant_id: int
    project_id: int | None = None


class PrivateConversationRead(CamelModel):
    id: int
    participant_a_id: int
    participant_b_id: int
    project_id: int | None = None
    created_at: datetime
    last_message_at: datetime | None = None
