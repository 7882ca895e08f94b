"""In-process registry of live delivery connections."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from app.monitoring.metrics import (
    delivery_active_connections,
    delivery_events_total,
    delivery_write_failures_total,
)
from app.services.errors import ChannelWriteFailure

from .events import connected_event

logger = logging.getLogger(__name__)

_WAKEUP: dict[str, Any] = {"type": "__wakeup__"}


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class StreamConnection:
    """One subscriber stream with its bounded outbound queue.

    Events are handed over with ``offer`` and drained by the transport loop
    serving the client. A full or closed queue means the peer stopped
    reading, so the connection is treated as dead.
    """

    def __init__(
        self,
        user_id: int,
        conversation_id: str,
        *,
        transport: str = "sse",
        queue_size: int = 100,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.transport = transport
        self.state = ConnectionState.CONNECTING
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(queue_size, 1))

    def __repr__(self) -> str:
        return (
            f"StreamConnection(id={self.id!r}, user_id={self.user_id}, "
            f"conversation_id={self.conversation_id!r}, state={self.state.value})"
        )

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def mark_open(self) -> None:
        if self.state is ConnectionState.CONNECTING:
            self.state = ConnectionState.OPEN

    def mark_active(self) -> None:
        if self.state is ConnectionState.OPEN:
            self.state = ConnectionState.ACTIVE

    def close(self) -> bool:
        """Move to CLOSED; returns False when the connection was already closed."""

        if self.state is ConnectionState.CLOSED:
            return False
        self.state = ConnectionState.CLOSED
        # wake a reader blocked on the queue
        with contextlib.suppress(asyncio.QueueFull):
            self.queue.put_nowait(_WAKEUP)
        return True

    def offer(self, event: dict[str, Any]) -> None:
        if self.is_closed:
            raise ChannelWriteFailure(self.id, "closed")
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            raise ChannelWriteFailure(self.id, "queue_full") from None

    async def next_event(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Wait for the next queued event; ``None`` on timeout or once closed."""

        try:
            event = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is _WAKEUP:
            return None
        return event


@dataclass(slots=True)
class DeliveryReport:
    conversation_id: str
    delivered: int = 0
    skipped: int = 0
    failed: list[str] = field(default_factory=list)


class DeliveryRegistry:
    """Maps conversation ids to the connections subscribed to them."""

    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._connections: Dict[str, Dict[str, StreamConnection]] = {}
        self._lock = asyncio.Lock()

    async def register(
        self, user_id: int, conversation_id: str, *, transport: str = "sse"
    ) -> StreamConnection:
        """Register an already authorized subscriber and queue its ``connected`` event."""

        connection = StreamConnection(
            user_id, conversation_id, transport=transport, queue_size=self._queue_size
        )
        async with self._lock:
            self._connections.setdefault(conversation_id, {})[connection.id] = connection
            connection.mark_open()
        delivery_active_connections.inc(transport=transport)
        connection.offer(connected_event(conversation_id))
        delivery_events_total.inc(type="connected")
        logger.debug("Registered %r", connection)
        return connection

    async def deregister(self, connection: StreamConnection) -> bool:
        """Remove the connection; repeated calls are no-ops."""

        async with self._lock:
            bucket = self._connections.get(connection.conversation_id)
            removed = bucket is not None and bucket.pop(connection.id, None) is not None
            if bucket is not None and not bucket:
                self._connections.pop(connection.conversation_id, None)
        connection.close()
        if removed:
            delivery_active_connections.dec(transport=connection.transport)
            logger.debug("Deregistered %r", connection)
        return removed

    async def connections_for(self, conversation_id: str) -> list[StreamConnection]:
        async with self._lock:
            return list(self._connections.get(conversation_id, {}).values())

    async def connection_count(self) -> int:
        async with self._lock:
            return sum(len(bucket) for bucket in self._connections.values())

    async def broadcast(
        self,
        conversation_id: str,
        event: dict[str, Any],
        *,
        exclude_user_id: int | None = None,
    ) -> DeliveryReport:
        """Queue the event on every subscriber except the excluded user.

        A connection that cannot accept the event is closed and removed;
        delivery to the remaining connections continues.
        """

        report = DeliveryReport(conversation_id=conversation_id)
        async with self._lock:
            targets = list(self._connections.get(conversation_id, {}).values())

        dead: list[StreamConnection] = []
        for connection in targets:
            if exclude_user_id is not None and connection.user_id == exclude_user_id:
                report.skipped += 1
                continue
            try:
                connection.offer(event)
            except ChannelWriteFailure as exc:
                logger.debug("Dropping delivery connection: %s", exc)
                delivery_write_failures_total.inc(reason=exc.reason)
                report.failed.append(connection.id)
                dead.append(connection)
                continue
            report.delivered += 1

        for connection in dead:
            await self.deregister(connection)
        if report.delivered:
            delivery_events_total.inc(report.delivered, type=event.get("type", "unknown"))
        return report

    async def clear(self) -> None:
        """Close and drop every registered connection."""

        async with self._lock:
            connections = [conn for bucket in self._connections.values() for conn in bucket.values()]
            self._connections.clear()
        for connection in connections:
            connection.close()
            delivery_active_connections.dec(transport=connection.transport)
