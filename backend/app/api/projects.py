"""Project group chat endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas import MessageCreate, ProjectMessageRead
from app.services.messaging import list_project_messages, post_project_message, publish_message_events
from relay.realtime.managers import DeliveryChannel, get_delivery_channel

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("/{project_id}/messages", response_model=list[ProjectMessageRead])
def get_project_messages(
    project_id: int,
    limit: int | None = Query(default=None, ge=1),
    before: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ProjectMessageRead]:
    messages = list_project_messages(db, current_user, project_id, limit=limit, before=before)
    return [ProjectMessageRead.model_validate(message) for message in messages]


@router.post(
    "/{project_id}/messages",
    response_model=ProjectMessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_project_message(
    project_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> ProjectMessageRead:
    """Post to a project chat, creating the chat on first use."""

    posted = post_project_message(db, current_user, project_id, payload.content)
    serialized = ProjectMessageRead.model_validate(posted.message)
    await publish_message_events(posted, serialized.model_dump(mode="json", by_alias=True), channel)
    return serialized
