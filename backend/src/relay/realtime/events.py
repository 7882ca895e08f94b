"""Builders for the JSON events pushed over delivery streams."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

CONNECTED = "connected"
HEARTBEAT = "heartbeat"
MESSAGE = "message"
READ = "read"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_event(event_type: str, **payload: Any) -> dict[str, Any]:
    event: dict[str, Any] = {"type": event_type}
    event.update(payload)
    event.setdefault("timestamp", utc_timestamp())
    return event


def connected_event(conversation_id: str) -> dict[str, Any]:
    return build_event(CONNECTED, conversationId=conversation_id)


def heartbeat_event() -> dict[str, Any]:
    return build_event(HEARTBEAT)


def message_event(conversation_id: str, message: dict[str, Any]) -> dict[str, Any]:
    return build_event(MESSAGE, conversationId=conversation_id, message=message)


def read_event(conversation_id: str, message_ids: Iterable[int], read_by: int, kind: str) -> dict[str, Any]:
    return build_event(
        READ,
        conversationId=conversation_id,
        messageIds=list(message_ids),
        readBy=read_by,
        kind=kind,
    )
