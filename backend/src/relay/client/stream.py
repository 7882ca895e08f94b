"""Server-sent events consumer with reconnect backoff."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from collections.abc import AsyncIterator
from typing import Any

import httpx
from httpx_sse import aconnect_sse

logger = logging.getLogger(__name__)


class ReconnectBackoff:
    """Exponential reconnect delays, reset after a successful connection."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        *,
        factor: float = 2.0,
        jitter: float = 0.0,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(self.base_delay * (self.factor**self.attempt), self.max_delay)
        self.attempt += 1
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return delay

    def reset(self) -> None:
        self.attempt = 0


class StreamAuthError(RuntimeError):
    """The server refused the subscription; reconnecting will not help."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"stream subscription rejected with HTTP {status_code}")


class EventStream:
    """Follows ``/api/realtime/messages`` for one conversation, reconnecting on loss.

    Events missed while disconnected are not replayed; consumers are expected
    to re-pull state after a reconnect, which is announced by the
    ``connected`` event every new connection starts with.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        conversation_id: str,
        *,
        token: str,
        path: str = "/api/realtime/messages",
        backoff: ReconnectBackoff | None = None,
    ) -> None:
        self._client = client
        self._conversation_id = conversation_id
        self._token = token
        self._path = path
        self.backoff = backoff or ReconnectBackoff()
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    async def _read_once(self) -> AsyncIterator[dict[str, Any]]:
        async with aconnect_sse(
            self._client,
            "GET",
            self._path,
            params={"conversationId": self._conversation_id},
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as event_source:
            response = event_source.response
            if response.status_code in (401, 403):
                raise StreamAuthError(response.status_code)
            response.raise_for_status()
            # SSEError on a non event-stream body is an httpx.TransportError
            async for sse in event_source.aiter_sse():
                try:
                    payload = sse.json()
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream event %s", sse.event)
                    continue
                if isinstance(payload, dict):
                    yield payload

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded events until ``stop`` is called or access is refused."""

        while not self._stopped:
            try:
                async with contextlib.aclosing(self._read_once()) as reader:
                    async for payload in reader:
                        if payload.get("type") == "connected":
                            self.backoff.reset()
                        yield payload
                        if self._stopped:
                            return
            except httpx.HTTPError as exc:
                logger.info("Event stream for %s dropped: %s", self._conversation_id, exc)
            if self._stopped:
                return
            delay = self.backoff.next_delay()
            logger.debug("Reconnecting event stream for %s in %.2fs", self._conversation_id, delay)
            await asyncio.sleep(delay)
