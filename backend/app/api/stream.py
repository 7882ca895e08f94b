"""Realtime delivery endpoints: server-sent events and WebSocket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status
from fastapi.security import OAuth2PasswordBearer
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.orm import Session, sessionmaker
from sse_starlette.sse import EventSourceResponse

from app.api.deps import get_current_user, get_session_factory, get_user_from_payload, get_user_from_token
from app.config import get_settings
from app.core.security import create_stream_token, decode_stream_token
from app.models import User
from app.monitoring.metrics import delivery_events_total
from app.schemas import StreamTokenResponse
from app.services.errors import ForbiddenError, MessagingError, UnauthorizedError
from app.services.permissions import ConversationRef, can_subscribe
from relay.realtime.events import heartbeat_event
from relay.realtime.managers import DeliveryChannel, get_delivery_channel
from relay.realtime.registry import DeliveryRegistry

router = APIRouter(tags=["realtime"])
ws_router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

optional_bearer = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


async def subscription_events(
    registry: DeliveryRegistry,
    user_id: int,
    conversation_id: str,
    *,
    transport: str,
    heartbeat_interval: float,
) -> AsyncIterator[dict[str, Any]]:
    """Register a subscriber and yield its events until it is closed.

    The first event is always ``connected``. A heartbeat is yielded whenever
    nothing was queued for ``heartbeat_interval`` seconds. The connection is
    deregistered when the consumer stops iterating, whatever the reason.
    """

    connection = await registry.register(user_id, conversation_id, transport=transport)
    try:
        while True:
            event = await connection.next_event(timeout=heartbeat_interval)
            if connection.is_closed:
                break
            if event is None:
                event = heartbeat_event()
                delivery_events_total.inc(type="heartbeat")
            yield event
            connection.mark_active()
    finally:
        await registry.deregister(connection)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through the websocket; False when the peer is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


def _authorize_subscription(conversation_id: str, user_id: int, db: Session) -> ConversationRef:
    ref = ConversationRef.parse(conversation_id)
    if not can_subscribe(ref, user_id, db):
        raise ForbiddenError("Not allowed to observe this conversation")
    return ref


@router.get(
    "/realtime/messages",
    responses={
        200: {"description": "SSE stream of conversation events"},
        401: {"description": "Not authenticated"},
        403: {"description": "Not a member of the conversation"},
    },
)
async def stream_conversation_events(
    request: Request,
    conversation_id: str = Query(..., alias="conversationId"),
    token: str | None = Query(default=None),
    bearer: str | None = Depends(optional_bearer),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> EventSourceResponse:
    """Subscribe to a conversation over server-sent events.

    Browsers cannot attach headers to ``EventSource`` requests, so a stream
    token may be passed as the ``token`` query parameter instead of an access
    token in the bearer header. The query parameter never accepts access
    tokens.
    """

    if not bearer and not token:
        raise UnauthorizedError("Not authenticated")

    with session_factory() as db:
        if bearer:
            user = get_user_from_token(bearer, db)
        else:
            user = get_user_from_payload(decode_stream_token(token), db)
        ref = _authorize_subscription(conversation_id, user.id, db)
        user_id = user.id

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        async for event in subscription_events(
            channel.registry,
            user_id,
            str(ref),
            transport="sse",
            heartbeat_interval=settings.delivery_heartbeat_interval_seconds,
        ):
            if await request.is_disconnected():
                break
            yield {"event": event["type"], "data": json.dumps(event)}

    return EventSourceResponse(
        event_generator(),
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
        },
        media_type="text/event-stream",
    )


@router.get("/ws/token", response_model=StreamTokenResponse)
def issue_stream_token(current_user: User = Depends(get_current_user)) -> StreamTokenResponse:
    """Issue a token for authenticating realtime subscriptions."""

    return StreamTokenResponse(
        token=create_stream_token(current_user.id, current_user.email),
        expires_in=settings.stream_token_expire_minutes * 60,
    )


async def _receive_client_messages(websocket: WebSocket) -> None:
    while True:
        try:
            raw_message = await websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError):
            return
        if not raw_message:
            continue
        if raw_message.strip().lower() == "ping":
            await safe_send_json(websocket, {"type": "pong"})
            continue
        try:
            payload = json.loads(raw_message)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and payload.get("type") == "ping":
            await safe_send_json(websocket, {"type": "pong"})


@ws_router.websocket("/conversations/{conversation_id}")
async def websocket_conversation(
    websocket: WebSocket,
    conversation_id: str,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> None:
    """Deliver conversation events as JSON frames to an authenticated subscriber."""

    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return

    try:
        with session_factory() as db:
            user = get_user_from_payload(decode_stream_token(token), db)
            ref = _authorize_subscription(conversation_id, user.id, db)
            user_id = user.id
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return
    except MessagingError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
        return

    await websocket.accept()
    events = subscription_events(
        channel.registry,
        user_id,
        str(ref),
        transport="websocket",
        heartbeat_interval=settings.delivery_heartbeat_interval_seconds,
    )

    async def pump() -> None:
        async for event in events:
            if not await safe_send_json(websocket, event):
                break

    pump_task = asyncio.create_task(pump())
    receive_task = asyncio.create_task(_receive_client_messages(websocket))
    try:
        await asyncio.wait({pump_task, receive_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (pump_task, receive_task):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await events.aclose()
        if websocket.application_state == WebSocketState.CONNECTED:
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close()
