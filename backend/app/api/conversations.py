"""Conversation list with per-conversation unread counters."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import MessageKind, User
from app.schemas import ConversationUnreadRead, MarkReadResponse
from app.services.errors import MessageValidationError
from app.services.read_state import coerce_kind, mark_conversation_read, publish_read_events
from app.services.unread import conversation_unread
from relay.realtime.managers import DeliveryChannel, get_delivery_channel

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationUnreadRead])
def list_conversations(
    kind: str | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ConversationUnreadRead]:
    message_kind = coerce_kind(kind) if kind is not None else None
    if message_kind is MessageKind.SYSTEM:
        raise MessageValidationError("System messages are not grouped into conversations")
    rows = conversation_unread(current_user.id, db, kind=message_kind)
    return [ConversationUnreadRead.model_validate(row) for row in rows]


@router.put("/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_as_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> MarkReadResponse:
    """Mark every unread message of one conversation as read."""

    result = mark_conversation_read(current_user.id, conversation_id, db)
    await publish_read_events(result, current_user.id, channel)
    return MarkReadResponse(marked_count=result.marked_count)
