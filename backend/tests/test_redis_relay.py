from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from typing import Any

import pytest

from app.monitoring.metrics import delivery_relay_errors_total
from relay.realtime.events import message_event
from relay.realtime.managers import DeliveryChannel
from relay.realtime.registry import DeliveryRegistry
from relay.realtime.transport import RedisRelay, RelayConfig, RelayUnavailableError


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)
        self._channels.clear()

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    def __init__(self, *, online: bool = True) -> None:
        self.online = online
        self.published: list[tuple[str, str]] = []
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        self.published.append((channel, payload))
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def close(self) -> None:
        self.fail()
        self._pubsubs.clear()

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if not subscribers:
            return
        subscribers.discard(pubsub)
        if not subscribers:
            self._pubsubs.pop(channel, None)

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)


class FakeRedisFactory:
    def __init__(self, *, shared: FakeRedis | None = None, online: bool = True) -> None:
        self.instances: list[FakeRedis] = []
        self._shared = shared
        self._online = online

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = self._shared or FakeRedis(online=self._online)
        self.instances.append(client)
        return client


def _install(monkeypatch, factory: FakeRedisFactory) -> None:
    monkeypatch.setattr(
        "relay.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=factory.from_url),
    )


def test_channel_names_are_namespaced() -> None:
    relay = RedisRelay(RelayConfig(redis_url=None, namespace="relay.realtime."))

    assert not relay.enabled
    assert relay.channel_name("delivery") == "relay.realtime.delivery"


@pytest.mark.anyio("asyncio")
async def test_publish_without_connection_raises() -> None:
    relay = RedisRelay(RelayConfig(redis_url="redis://fake"))

    with pytest.raises(RelayUnavailableError):
        await relay.publish("delivery", {"value": 1})


@pytest.mark.anyio("asyncio")
async def test_events_cross_nodes_through_relay(monkeypatch) -> None:
    broker = FakeRedis()
    _install(monkeypatch, FakeRedisFactory(shared=broker))

    registry_a, registry_b = DeliveryRegistry(), DeliveryRegistry()
    node_a = DeliveryChannel(registry_a, RedisRelay(RelayConfig("redis://fake", node_id="a")), node_id="a")
    node_b = DeliveryChannel(registry_b, RedisRelay(RelayConfig("redis://fake", node_id="b")), node_id="b")
    await node_a.start()
    await node_b.start()
    try:
        local = await registry_a.register(1, "project:9")
        remote = await registry_b.register(2, "project:9")
        sender_elsewhere = await registry_b.register(3, "project:9")
        for connection in (local, remote, sender_elsewhere):
            await connection.next_event(timeout=0.1)

        event = message_event("project:9", {"id": 5})
        report = await node_a.publish("project:9", event, exclude_user_id=3)

        assert report.delivered == 1
        assert await local.next_event(timeout=1) == event
        assert await remote.next_event(timeout=1) == event
        assert await sender_elsewhere.next_event(timeout=0.1) is None
        assert await local.next_event(timeout=0.1) is None
        assert broker.published[0][0] == "relay.realtime.delivery"
    finally:
        await node_a.stop()
        await node_b.stop()


@pytest.mark.anyio("asyncio")
async def test_startup_failure_falls_back_to_local_delivery(monkeypatch, caplog) -> None:
    _install(monkeypatch, FakeRedisFactory(online=False))
    registry = DeliveryRegistry()
    channel = DeliveryChannel(registry, RedisRelay(RelayConfig("redis://down")), node_id="solo")

    with caplog.at_level(logging.WARNING):
        await channel.start()

    assert not channel.relay_active
    assert delivery_relay_errors_total.value(reason="startup") == 1.0
    assert any("local-only delivery" in record.getMessage() for record in caplog.records)

    connection = await registry.register(1, "inbox:1")
    await connection.next_event(timeout=0.1)
    report = await channel.publish("inbox:1", {"type": "message"})
    assert report.delivered == 1
    await channel.stop()


@pytest.mark.anyio("asyncio")
async def test_publish_failure_warns_once_and_keeps_local_delivery(monkeypatch, caplog) -> None:
    factory = FakeRedisFactory()
    _install(monkeypatch, factory)
    registry = DeliveryRegistry()
    channel = DeliveryChannel(registry, RedisRelay(RelayConfig("redis://flaky")), node_id="solo")
    await channel.start()
    connection = await registry.register(1, "project:2")
    await connection.next_event(timeout=0.1)

    factory.instances[0].fail()
    try:
        with caplog.at_level(logging.WARNING):
            first = await channel.publish("project:2", {"type": "message", "n": 1})
            second = await channel.publish("project:2", {"type": "message", "n": 2})

        assert (first.delivered, second.delivered) == (1, 1)
        assert (await connection.next_event(timeout=0.1))["n"] == 1
        assert (await connection.next_event(timeout=0.1))["n"] == 2
        warnings = [
            record
            for record in caplog.records
            if record.name == "relay.realtime.managers" and record.levelno == logging.WARNING
        ]
        assert len(warnings) == 1
        assert delivery_relay_errors_total.value(reason="publish") == 2.0
    finally:
        await channel.stop()


@pytest.mark.anyio("asyncio")
async def test_relay_recovers_after_disconnect(monkeypatch) -> None:
    factory = FakeRedisFactory()
    _install(monkeypatch, factory)
    monkeypatch.setattr("relay.realtime.transport._RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("relay.realtime.transport._RECOVERY_MAX_DELAY", 0.05)

    relay = RedisRelay(RelayConfig(redis_url="redis://fake"))
    await relay.start()

    received: list[dict[str, Any]] = []
    received_event = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)
        received_event.set()

    subscription = await relay.subscribe("delivery", handler)

    await relay.publish("delivery", {"value": 1})
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    factory.instances[0].fail()
    await asyncio.sleep(0)

    with pytest.raises(RelayUnavailableError):
        await relay.publish("delivery", {"value": 2})

    async def publish_with_retry(payload: dict[str, Any]) -> None:
        for _ in range(20):
            try:
                await relay.publish("delivery", payload)
                return
            except RelayUnavailableError:
                await asyncio.sleep(0.05)
        raise AssertionError("Redis relay did not recover in time")

    await publish_with_retry({"value": 3})
    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert received == [{"value": 3}]
    assert len(factory.instances) >= 2
    assert delivery_relay_errors_total.value(reason="reader_stopped") + delivery_relay_errors_total.value(
        reason="publish_failed"
    ) >= 1.0

    await subscription.close()
    await relay.stop()
