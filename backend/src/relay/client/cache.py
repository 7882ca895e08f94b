"""Bounded, expiring cache of conversation history kept by a client session.

The cache is best effort: entries are dropped by recency and by age, and the
server always wins on conflict. Reads hand out immutable snapshots so that
a concurrent update or eviction never exposes a half-written entry.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Hashable, Iterable

_CONVERSATION = "conversation"
_MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class CachedMessage:
    id: int
    conversation_id: str
    kind: str
    content: str
    created_at: datetime
    sender_id: int | None = None
    is_read: bool = False

    @classmethod
    def from_payload(cls, conversation_id: str, payload: dict[str, Any]) -> "CachedMessage":
        """Build an entry from a message as serialized by the API."""

        created_at = payload["createdAt"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        return cls(
            id=int(payload["id"]),
            conversation_id=conversation_id,
            kind=str(payload.get("kind", "private")),
            content=payload.get("content", ""),
            created_at=created_at,
            sender_id=payload.get("senderId"),
            is_read=bool(payload.get("isRead", False)),
        )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return self.created_at, self.id


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    expirations: int


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


def _message_key(kind: str, message_id: int) -> tuple[str, str, int]:
    return (_MESSAGE, kind, int(message_id))


def _conversation_key(conversation_id: str) -> tuple[str, str]:
    return (_CONVERSATION, conversation_id)


class MessageCache:
    """LRU cache with a per-entry time to live.

    Holds two kinds of entries under one capacity: the ordered history of a
    conversation and individual messages addressed by kind and id.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 30 * 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_entries = max_entries
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[Hashable, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    # ------------------------------------------------------------------
    # Internal helpers; callers hold the lock
    # ------------------------------------------------------------------
    def _lookup(self, key: Hashable) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return entry

    def _peek(self, key: Hashable) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._expirations += 1
            return None
        return entry

    def _store(self, key: Hashable, value: Any, *, refresh: bool = True) -> None:
        existing = self._entries.get(key)
        if existing is not None and not refresh:
            existing.value = value
            return
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self._ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def _replace_in_conversation(
        self, conversation_id: str, message: CachedMessage | None, key: tuple, *, touch: bool = False
    ) -> None:
        conversation_key = _conversation_key(conversation_id)
        entry = self._peek(conversation_key)
        if entry is None:
            return
        if touch:
            self._entries.move_to_end(conversation_key)
        kept = [item for item in entry.value if _message_key(item.kind, item.id) != key]
        if message is not None:
            kept.append(message)
        kept.sort(key=lambda item: item.sort_key)
        entry.value = tuple(kept)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, conversation_id: str) -> list[CachedMessage]:
        """Cached history ordered oldest first; empty on miss or expiry."""

        with self._lock:
            entry = self._lookup(_conversation_key(conversation_id))
            return list(entry.value) if entry is not None else []

    def get_message(self, message_id: int, *, kind: str) -> CachedMessage | None:
        with self._lock:
            entry = self._lookup(_message_key(kind, message_id))
            return entry.value if entry is not None else None

    def put(self, conversation_id: str, messages: Iterable[CachedMessage]) -> None:
        """Replace a conversation's history and index each of its messages."""

        ordered = tuple(sorted(messages, key=lambda item: item.sort_key))
        with self._lock:
            for message in ordered:
                self._store(_message_key(message.kind, message.id), message)
            self._store(_conversation_key(conversation_id), ordered)

    def upsert_message(self, message: CachedMessage) -> None:
        """Insert or replace one message in both of its entries."""

        key = _message_key(message.kind, message.id)
        with self._lock:
            # the history goes first so storing the message cannot evict it
            self._replace_in_conversation(message.conversation_id, message, key, touch=True)
            self._store(key, message)

    def update_message(self, message_id: int, *, kind: str, **changes: Any) -> CachedMessage | None:
        """Apply a local edit such as ``is_read=True`` to a cached message."""

        key = _message_key(kind, message_id)
        with self._lock:
            entry = self._peek(key)
            if entry is None:
                return None
            updated = dataclasses.replace(entry.value, **changes)
            self._store(key, updated, refresh=False)
            self._replace_in_conversation(updated.conversation_id, updated, key)
            return updated

    def delete_message(self, message_id: int, *, kind: str, conversation_id: str | None = None) -> bool:
        """Drop a message; ``conversation_id`` covers an already evicted message entry."""

        key = _message_key(kind, message_id)
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                conversation_id = entry.value.conversation_id
            if conversation_id is not None:
                self._replace_in_conversation(conversation_id, None, key)
            return entry is not None

    def invalidate(self, conversation_id: str) -> None:
        """Forget a conversation's history and every message indexed from it."""

        with self._lock:
            self._entries.pop(_conversation_key(conversation_id), None)
            stale = [
                key
                for key, entry in self._entries.items()
                if key[0] == _MESSAGE and entry.value.conversation_id == conversation_id
            ]
            for key in stale:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_entries=self._max_entries,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
