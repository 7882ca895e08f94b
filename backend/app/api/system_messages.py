"""Endpoints for system broadcasts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas import SystemMessageCreate, SystemMessageRead
from app.services.messaging import post_system_message, publish_message_events
from relay.realtime.managers import DeliveryChannel, get_delivery_channel

router = APIRouter(prefix="/system-messages", tags=["system-messages"])


@router.post("", response_model=SystemMessageRead, status_code=status.HTTP_201_CREATED)
async def create_system_message(
    payload: SystemMessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> SystemMessageRead:
    """Send a system message to the listed recipients or to every user."""

    posted = post_system_message(
        db,
        current_user,
        title=payload.title,
        content=payload.content,
        is_global=payload.is_global,
        recipient_ids=payload.recipient_ids,
    )
    serialized = SystemMessageRead.model_validate(posted.message)
    await publish_message_events(posted, serialized.model_dump(mode="json", by_alias=True), channel)
    return serialized
