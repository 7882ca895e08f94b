from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from relay.client.api import UnreadCounts
from relay.client.status import UnreadStatus, UnreadStatusProvider


class ScriptedSnapshots:
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results: UnreadCounts | Exception) -> None:
        self.results = list(results)
        self.calls = 0

    async def __call__(self) -> UnreadCounts:
        self.calls += 1
        result = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class EventFeed:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.subscribed = asyncio.Event()

    async def __call__(self) -> AsyncIterator[dict[str, Any]]:
        self.subscribed.set()
        while True:
            yield await self.queue.get()


def test_status_exposes_badge_fields() -> None:
    status = UnreadStatus(counts=UnreadCounts(system=2, project=1, private=3), is_loading=False)

    assert status.system_unread_count == 2
    assert status.im_unread_count == 4
    assert status.total_unread_count == 6
    assert status.has_unread_messages
    assert UnreadStatus().is_loading
    assert not UnreadStatus().has_unread_messages


@pytest.mark.anyio("asyncio")
async def test_start_seeds_status_and_notifies_subscribers() -> None:
    fetch = ScriptedSnapshots(UnreadCounts(system=1, private=2))
    provider = UnreadStatusProvider(fetch, poll_interval=60)
    seen: list[UnreadStatus] = []
    unsubscribe = provider.subscribe(seen.append)

    await provider.start()
    try:
        assert provider.status.total_unread_count == 3
        assert not provider.status.is_loading
        assert [status.total_unread_count for status in seen] == [0, 3]
        assert seen[0].is_loading

        unsubscribe()
        await provider.refresh()
        assert len(seen) == 2
    finally:
        await provider.stop()


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_keeps_last_counts_and_marks_stale() -> None:
    fetch = ScriptedSnapshots(UnreadCounts(project=4), RuntimeError("boom"), UnreadCounts(project=1))
    provider = UnreadStatusProvider(fetch, poll_interval=60)

    await provider.refresh()
    stale = await provider.refresh()

    assert stale.total_unread_count == 4
    assert stale.is_stale
    assert stale.error == "boom"

    fresh = await provider.refresh()
    assert fresh.total_unread_count == 1
    assert not fresh.is_stale


@pytest.mark.anyio("asyncio")
async def test_events_within_debounce_window_cause_one_refresh() -> None:
    fetch = ScriptedSnapshots(UnreadCounts())
    feed = EventFeed()
    provider = UnreadStatusProvider(fetch, feed, poll_interval=60, debounce=0.05)

    await provider.start()
    try:
        await asyncio.wait_for(feed.subscribed.wait(), timeout=1)
        assert fetch.calls == 1
        for event_type in ("message", "read", "message", "heartbeat"):
            feed.queue.put_nowait({"type": event_type})
        await asyncio.sleep(0.2)
        assert fetch.calls == 2
    finally:
        await provider.stop()


@pytest.mark.anyio("asyncio")
async def test_heartbeats_do_not_trigger_refresh() -> None:
    fetch = ScriptedSnapshots(UnreadCounts())
    feed = EventFeed()
    provider = UnreadStatusProvider(fetch, feed, poll_interval=60, debounce=0.01)

    await provider.start()
    try:
        await asyncio.wait_for(feed.subscribed.wait(), timeout=1)
        feed.queue.put_nowait({"type": "heartbeat"})
        feed.queue.put_nowait({"type": "connected"})
        await asyncio.sleep(0.1)
        assert fetch.calls == 1
    finally:
        await provider.stop()


@pytest.mark.anyio("asyncio")
async def test_poll_loop_refreshes_periodically() -> None:
    fetch = ScriptedSnapshots(UnreadCounts(system=1))
    provider = UnreadStatusProvider(fetch, poll_interval=0.02)

    await provider.start()
    try:
        await asyncio.sleep(0.15)
    finally:
        await provider.stop()

    assert fetch.calls >= 3


@pytest.mark.anyio("asyncio")
async def test_stop_is_idempotent_and_halts_polling() -> None:
    fetch = ScriptedSnapshots(UnreadCounts())
    provider = UnreadStatusProvider(fetch, EventFeed(), poll_interval=0.01)

    await provider.start()
    provider.request_refresh()
    await provider.stop()
    await provider.stop()
    calls = fetch.calls
    await asyncio.sleep(0.05)

    assert not provider.running
    assert fetch.calls == calls


class StallingSnapshots:
    """Reads ``private`` when called and blocks on the call numbered ``stall_on``."""

    def __init__(self, stall_on: int) -> None:
        self.private = 0
        self.seen: list[int] = []
        self.stall_on = stall_on
        self.stalled = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self) -> UnreadCounts:
        value = self.private
        self.seen.append(value)
        if len(self.seen) == self.stall_on:
            self.stalled.set()
            await self.release.wait()
        return UnreadCounts(private=value)


@pytest.mark.anyio("asyncio")
async def test_event_during_in_flight_refresh_schedules_another() -> None:
    fetch = StallingSnapshots(stall_on=2)
    feed = EventFeed()
    provider = UnreadStatusProvider(fetch, feed, poll_interval=60, debounce=0.01)

    await provider.start()
    try:
        await asyncio.wait_for(feed.subscribed.wait(), timeout=1)
        fetch.private = 1
        feed.queue.put_nowait({"type": "message"})
        await asyncio.wait_for(fetch.stalled.wait(), timeout=1)

        fetch.private = 2
        feed.queue.put_nowait({"type": "read"})
        await asyncio.sleep(0.02)
        fetch.release.set()
        await asyncio.sleep(0.1)

        assert fetch.seen == [0, 1, 2]
        assert provider.status.counts.private == 2
    finally:
        await provider.stop()


@pytest.mark.anyio("asyncio")
async def test_stop_during_initial_refresh_prevents_background_work() -> None:
    fetch = StallingSnapshots(stall_on=1)
    feed = EventFeed()
    provider = UnreadStatusProvider(fetch, feed, poll_interval=0.01, debounce=0)

    starting = asyncio.create_task(provider.start())
    await asyncio.wait_for(fetch.stalled.wait(), timeout=1)
    await provider.stop()
    fetch.release.set()
    await starting

    provider.request_refresh()
    await asyncio.sleep(0.05)

    assert not provider.running
    assert not feed.subscribed.is_set()
    assert fetch.seen == [0]
