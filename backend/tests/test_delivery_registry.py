from __future__ import annotations

import asyncio

import pytest

from app.monitoring.metrics import (
    delivery_active_connections,
    delivery_events_total,
    delivery_write_failures_total,
)
from app.services.errors import ChannelWriteFailure
from relay.realtime.events import message_event
from relay.realtime.registry import ConnectionState, DeliveryRegistry, StreamConnection


async def _drain(connection: StreamConnection) -> list[dict]:
    events = []
    while not connection.queue.empty():
        events.append(connection.queue.get_nowait())
    return events


@pytest.mark.anyio("asyncio")
async def test_register_opens_connection_and_queues_connected_event() -> None:
    registry = DeliveryRegistry()

    connection = await registry.register(1, "project:5")

    assert connection.state is ConnectionState.OPEN
    event = await connection.next_event(timeout=0.1)
    assert event["type"] == "connected"
    assert event["conversationId"] == "project:5"
    assert "timestamp" in event
    assert await registry.connection_count() == 1
    assert delivery_active_connections.value(transport="sse") == 1.0
    assert delivery_events_total.value(type="connected") == 1.0


@pytest.mark.anyio("asyncio")
async def test_state_machine_transitions() -> None:
    connection = StreamConnection(1, "inbox:1")

    assert connection.state is ConnectionState.CONNECTING
    connection.mark_active()
    assert connection.state is ConnectionState.CONNECTING

    connection.mark_open()
    connection.mark_active()
    assert connection.state is ConnectionState.ACTIVE

    assert connection.close() is True
    assert connection.close() is False
    connection.mark_open()
    assert connection.state is ConnectionState.CLOSED
    with pytest.raises(ChannelWriteFailure):
        connection.offer({"type": "heartbeat"})


@pytest.mark.anyio("asyncio")
async def test_two_sessions_receive_message_once_each() -> None:
    registry = DeliveryRegistry()
    first = await registry.register(7, "private:3")
    second = await registry.register(7, "private:3")
    sender = await registry.register(8, "private:3")
    for connection in (first, second, sender):
        await _drain(connection)

    event = message_event("private:3", {"id": 1, "content": "hi"})
    report = await registry.broadcast("private:3", event, exclude_user_id=8)

    assert report.delivered == 2
    assert report.skipped == 1
    assert await _drain(first) == [event]
    assert await _drain(second) == [event]
    assert await _drain(sender) == []


@pytest.mark.anyio("asyncio")
async def test_disconnected_session_receives_nothing() -> None:
    registry = DeliveryRegistry()
    staying = await registry.register(7, "private:3")
    leaving = await registry.register(7, "private:3")
    await registry.deregister(leaving)
    await _drain(staying)
    await _drain(leaving)

    await registry.broadcast("private:3", message_event("private:3", {"id": 2}))

    assert len(await _drain(staying)) == 1
    assert await _drain(leaving) == []


@pytest.mark.anyio("asyncio")
async def test_full_queue_drops_only_that_connection() -> None:
    registry = DeliveryRegistry(queue_size=2)
    slow = await registry.register(1, "project:1")
    fast = await registry.register(2, "project:1")
    # the connected event already occupies one slot
    slow.offer({"type": "heartbeat"})
    await _drain(fast)

    report = await registry.broadcast("project:1", message_event("project:1", {"id": 3}))

    assert report.failed == [slow.id]
    assert report.delivered == 1
    assert slow.state is ConnectionState.CLOSED
    assert await registry.connections_for("project:1") == [fast]
    assert delivery_write_failures_total.value(reason="queue_full") == 1.0
    assert len(await _drain(fast)) == 1


@pytest.mark.anyio("asyncio")
async def test_deregister_is_idempotent() -> None:
    registry = DeliveryRegistry()
    connection = await registry.register(1, "inbox:1")

    assert await registry.deregister(connection) is True
    assert await registry.deregister(connection) is False
    assert await registry.connection_count() == 0
    assert delivery_active_connections.value(transport="sse") == 0.0


@pytest.mark.anyio("asyncio")
async def test_close_wakes_waiting_reader() -> None:
    registry = DeliveryRegistry()
    connection = await registry.register(1, "inbox:1")
    await _drain(connection)

    waiter = asyncio.create_task(connection.next_event(timeout=5))
    await asyncio.sleep(0)
    await registry.deregister(connection)

    assert await asyncio.wait_for(waiter, timeout=1) is None


@pytest.mark.anyio("asyncio")
async def test_clear_closes_everything() -> None:
    registry = DeliveryRegistry()
    connections = [
        await registry.register(1, "inbox:1"),
        await registry.register(2, "project:4", transport="websocket"),
    ]

    await registry.clear()

    assert await registry.connection_count() == 0
    assert all(connection.is_closed for connection in connections)
    assert delivery_active_connections.value(transport="sse") == 0.0
    assert delivery_active_connections.value(transport="websocket") == 0.0


@pytest.mark.anyio("asyncio")
async def test_broadcast_to_unknown_conversation_is_empty() -> None:
    registry = DeliveryRegistry()

    report = await registry.broadcast("project:99", {"type": "message"})

    assert (report.delivered, report.skipped, report.failed) == (0, 0, [])
