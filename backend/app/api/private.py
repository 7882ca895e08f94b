"""Private one-to-one conversation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas import ConversationCreate, MessageCreate, PrivateConversationRead, PrivateMessageRead
from app.services.messaging import (
    get_or_create_conversation,
    list_private_messages,
    post_private_message,
    publish_message_events,
)
from relay.realtime.managers import DeliveryChannel, get_delivery_channel

router = APIRouter(prefix="/private-conversations", tags=["private-conversations"])


@router.post("", response_model=PrivateConversationRead)
def open_conversation(
    payload: ConversationCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PrivateConversationRead:
    """Return the conversation with another user, creating it when missing."""

    conversation, created = get_or_create_conversation(
        db, current_user, payload.participant_id, payload.project_id
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return PrivateConversationRead.model_validate(conversation)


@router.get("/{conversation_id}/messages", response_model=list[PrivateMessageRead])
def get_private_messages(
    conversation_id: int,
    limit: int | None = Query(default=None, ge=1),
    before: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[PrivateMessageRead]:
    messages = list_private_messages(db, current_user, conversation_id, limit=limit, before=before)
    return [PrivateMessageRead.model_validate(message) for message in messages]


@router.post(
    "/{conversation_id}/messages",
    response_model=PrivateMessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_private_message(
    conversation_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> PrivateMessageRead:
    posted = post_private_message(db, current_user, conversation_id, payload.content)
    serialized = PrivateMessageRead.model_validate(posted.message)
    await publish_message_events(posted, serialized.model_dump(mode="json", by_alias=True), channel)
    return serialized
