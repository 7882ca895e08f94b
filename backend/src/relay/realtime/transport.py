"""Redis pub/sub relay that carries delivery events between nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import delivery_relay_errors_total

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

DELIVERY_TOPIC = "delivery"

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class RelayConfig:
    """Connection settings for the cross-node relay."""

    redis_url: str | None
    namespace: str = "relay.realtime"
    node_id: str | None = None


class RelayUnavailableError(RuntimeError):
    """Raised when the relay backend is not configured or cannot be reached."""


class Subscription:
    """Handle returned by ``RedisRelay.subscribe``."""

    def __init__(self, channel: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._channel = channel
        self._cleanup = cleanup
        self._closed = False

    @property
    def channel(self) -> str:
        return self._channel

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._cleanup()


@dataclass(slots=True)
class _ReaderState:
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


class RedisRelay:
    """Publishes JSON payloads to Redis and feeds incoming ones to handlers.

    A dropped subscription reader triggers a background reconnect with
    exponential backoff; publishing while the backend is down raises
    ``RelayUnavailableError`` and leaves it to the caller to fall back to
    local delivery.
    """

    def __init__(self, config: RelayConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._readers: list[_ReaderState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    def channel_name(self, topic: str) -> str:
        prefix = self._config.namespace.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def start(self) -> None:
        if not self.enabled or self._redis is not None:
            return
        client = redis_asyncio.from_url(self._config.redis_url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await client.close()
            raise RelayUnavailableError("Redis relay is unavailable") from exc
        self._redis = client

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for state in list(self._readers):
            await self._close_reader(state)
        self._readers.clear()
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
            self._redis = None

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise RelayUnavailableError("Redis relay is not connected")
        channel = self.channel_name(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise RelayUnavailableError("Redis relay is unavailable") from exc
        logger.debug("Relayed payload to %s", channel)

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            raise RelayUnavailableError("Redis relay is not connected")
        state = _ReaderState(channel=self.channel_name(topic), handler=handler)
        self._readers.append(state)
        try:
            await self._attach_reader(state)
        except RelayUnavailableError:
            await self._close_reader(state)
            raise

        async def cleanup() -> None:
            await self._close_reader(state)

        return Subscription(state.channel, cleanup)

    # ------------------------------------------------------------------
    # Reader management
    # ------------------------------------------------------------------
    async def _attach_reader(self, state: _ReaderState) -> None:
        if self._redis is None:
            raise RelayUnavailableError("Redis relay is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise RelayUnavailableError("Redis relay is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed relay payload on %s", state.channel)
                    continue
                try:
                    await state.handler(payload)
                except Exception:
                    logger.exception("Relay handler failed for %s", state.channel)

        task = asyncio.create_task(reader(), name=f"relay-redis-{state.channel}")
        state.task = task
        task.add_done_callback(lambda finished: self._on_reader_done(state, finished))

    def _on_reader_done(self, state: _ReaderState, task: asyncio.Task[Any]) -> None:
        state.task = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis relay reader for %s stopped; scheduling recovery",
            state.channel,
            exc_info=exc,
        )
        self._trigger_recovery("reader_stopped")

    async def _pause_reader(self, state: _ReaderState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        state.pubsub = None
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.suspending = False

    async def _close_reader(self, state: _ReaderState) -> None:
        state.active = False
        await self._pause_reader(state)
        if state in self._readers:
            self._readers.remove(state)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _trigger_recovery(self, reason: str) -> None:
        if not self.enabled:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        delivery_relay_errors_total.inc(reason=reason)
        self._recovery_task = asyncio.create_task(self._recovery_runner(reason), name="relay-redis-recovery")

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY)
            await asyncio.sleep(delay)
            try:
                await self._restart()
            except (RelayUnavailableError, *_REDIS_ERRORS):
                attempt += 1
                logger.debug("Redis relay recovery attempt %s failed (%s)", attempt, reason)
                continue
            break
        self._recovery_task = None
        logger.info("Redis relay recovered after %s", reason)

    async def _restart(self) -> None:
        async with self._recovery_lock:
            for state in list(self._readers):
                await self._pause_reader(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._readers if state.active]:
                await self._attach_reader(state)
