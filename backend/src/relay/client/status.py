"""Live unread counters for a client session.

The provider keeps one snapshot of the unread counts fresh by polling at a
fixed interval and by refreshing shortly after delivery events arrive. Bursts
of events are coalesced into a single fetch.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from .api import UnreadCounts

logger = logging.getLogger(__name__)

_REFRESH_EVENT_TYPES = frozenset({"message", "read"})

StatusCallback = Callable[["UnreadStatus"], None]


@dataclass(frozen=True, slots=True)
class UnreadStatus:
    """What the UI shows as the global unread badge."""

    counts: UnreadCounts = UnreadCounts()
    updated_at: datetime | None = None
    is_loading: bool = True
    is_stale: bool = False
    error: str | None = None

    @property
    def system_unread_count(self) -> int:
        return self.counts.system

    @property
    def im_unread_count(self) -> int:
        return self.counts.project + self.counts.private

    @property
    def total_unread_count(self) -> int:
        return self.counts.total

    @property
    def has_unread_messages(self) -> bool:
        return self.counts.total > 0


class UnreadStatusProvider:
    def __init__(
        self,
        fetch_snapshot: Callable[[], Awaitable[UnreadCounts]],
        subscribe_events: Callable[[], AsyncIterator[dict[str, Any]]] | None = None,
        *,
        poll_interval: float = 30.0,
        debounce: float = 1.0,
    ) -> None:
        self._fetch_snapshot = fetch_snapshot
        self._subscribe_events = subscribe_events
        self._poll_interval = poll_interval
        self._debounce = debounce
        self._status = UnreadStatus()
        self._subscribers: list[StatusCallback] = []
        self._refresh_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._events_task: asyncio.Task[None] | None = None
        self._pending_refresh: asyncio.Task[None] | None = None
        self._pending_fetching = False
        self._dirty = False
        self._running = False
        self._generation = 0

    @property
    def status(self) -> UnreadStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._generation += 1
        generation = self._generation
        await self.refresh()
        if not self._running or generation != self._generation:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        if self._subscribe_events is not None:
            self._events_task = asyncio.create_task(self._event_loop())

    async def stop(self) -> None:
        """Cancel background work; safe to call more than once."""

        self._running = False
        self._generation += 1
        self._dirty = False
        tasks = [
            task
            for task in (self._poll_task, self._events_task, self._pending_refresh)
            if task is not None
        ]
        self._poll_task = self._events_task = self._pending_refresh = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def refresh(self) -> UnreadStatus:
        """Fetch a fresh snapshot; on failure the last counts stay, marked stale."""

        async with self._refresh_lock:
            try:
                counts = await self._fetch_snapshot()
            except Exception as exc:
                logger.warning("Unread counts refresh failed: %s", exc)
                self._set_status(replace(self._status, is_loading=False, is_stale=True, error=str(exc)))
            else:
                self._set_status(
                    UnreadStatus(counts=counts, updated_at=datetime.now(timezone.utc), is_loading=False)
                )
        return self._status

    def request_refresh(self) -> None:
        """Schedule a refresh after the debounce window unless one is already pending.

        A request that arrives while the pending refresh is already fetching
        queues exactly one follow-up refresh. Ignored once stopped.
        """

        if not self._running:
            return
        pending = self._pending_refresh
        if pending is not None and not pending.done():
            if self._pending_fetching:
                self._dirty = True
            return
        self._pending_refresh = asyncio.create_task(self._debounced_refresh())

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback`` and call it with the current status right away."""

        self._subscribers.append(callback)
        callback(self._status)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_status(self, status: UnreadStatus) -> None:
        self._status = status
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("Unread status subscriber failed")

    async def _debounced_refresh(self) -> None:
        while True:
            self._dirty = False
            if self._debounce > 0:
                await asyncio.sleep(self._debounce)
            self._pending_fetching = True
            try:
                await self.refresh()
            finally:
                self._pending_fetching = False
            if not (self._dirty and self._running):
                return

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            await self.refresh()

    async def _event_loop(self) -> None:
        assert self._subscribe_events is not None
        try:
            async for event in self._subscribe_events():
                if event.get("type") in _REFRESH_EVENT_TYPES:
                    self.request_refresh()
        except Exception:  # pragma: no cover - polling keeps running
            logger.exception("Unread event subscription stopped")
