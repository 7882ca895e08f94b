"""Unread counts, notification dropdown and read-state endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas import (
    MarkAllReadRequest,
    MarkBatchReadRequest,
    MarkReadRequest,
    MarkReadResponse,
    RecentUnreadMessage,
    RecentUnreadResponse,
    UnreadCountResponse,
)
from app.services.messaging import soft_delete_message
from app.services.read_state import (
    coerce_kind,
    mark_all_read,
    mark_batch_read,
    mark_read,
    publish_read_events,
)
from app.services.unread import get_unread_snapshot, recent_unread
from relay.realtime.managers import DeliveryChannel, get_delivery_channel

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> UnreadCountResponse:
    """Unread totals for the current user, split by message kind."""

    snapshot = get_unread_snapshot(current_user.id, db)
    return UnreadCountResponse.model_validate(snapshot.as_dict())


@router.get("/recent", response_model=RecentUnreadResponse)
def get_recent_unread(
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RecentUnreadResponse:
    """Latest unread messages for the notification dropdown."""

    items = recent_unread(current_user.id, limit, db)
    snapshot = get_unread_snapshot(current_user.id, db)
    return RecentUnreadResponse(
        messages=[RecentUnreadMessage.model_validate(item) for item in items],
        total=snapshot.total,
        breakdown=snapshot.as_dict()["breakdown"],
    )


@router.post("/mark-read", response_model=MarkReadResponse)
async def mark_message_read(
    payload: MarkReadRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> MarkReadResponse:
    result = mark_read(current_user.id, payload.message_type, payload.message_id, db)
    await publish_read_events(result, current_user.id, channel)
    return MarkReadResponse(marked_count=result.marked_count)


@router.put("/mark-read", response_model=MarkReadResponse)
async def mark_messages_read(
    payload: MarkBatchReadRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> MarkReadResponse:
    result = mark_batch_read(current_user.id, payload.message_type, payload.message_ids, db)
    await publish_read_events(result, current_user.id, channel)
    return MarkReadResponse(marked_count=result.marked_count)


@router.post("/mark-all-read", response_model=MarkReadResponse)
async def mark_every_message_read(
    payload: MarkAllReadRequest | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> MarkReadResponse:
    message_type = payload.message_type if payload is not None else MarkAllReadRequest().message_type
    result = mark_all_read(current_user.id, message_type, db)
    await publish_read_events(result, current_user.id, channel)
    return MarkReadResponse(marked_count=result.marked_count)


@router.delete("/{kind}/{message_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_message(
    kind: str,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Soft-delete a message authored by the current user."""

    soft_delete_message(db, current_user, coerce_kind(kind), message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
