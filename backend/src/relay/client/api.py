"""Async HTTP client for the Relay messaging API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from .cache import CachedMessage, MessageCache
from .config import get_client_settings
from .stream import EventStream, ReconnectBackoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UnreadCounts:
    system: int = 0
    project: int = 0
    private: int = 0

    @property
    def total(self) -> int:
        return self.system + self.project + self.private

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UnreadCounts":
        breakdown = payload.get("breakdown") or {}
        return cls(
            system=int(breakdown.get("system", 0)),
            project=int(breakdown.get("project", 0)),
            private=int(breakdown.get("private", 0)),
        )


class MessagingClientError(RuntimeError):
    """The API answered with an error status."""

    def __init__(self, status_code: int, detail: Any) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


def _conversation_id(kind: str, target_id: int) -> str:
    return f"{kind}:{target_id}"


class MessagingClient:
    """Talks to the API on behalf of one signed-in user.

    Writes always reach the server before the local cache is touched, so a
    failed request never leaves optimistic state behind.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        cache: MessageCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_client_settings()
        self._token = token
        self.cache = cache or MessageCache(settings.cache_max_entries, settings.cache_ttl_seconds)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url or settings.base_url,
            timeout=settings.request_timeout_seconds,
        )
        self._http.headers["Authorization"] = f"Bearer {token}"

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise MessagingClientError(response.status_code, detail)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Unread state
    # ------------------------------------------------------------------
    async def get_unread_counts(self) -> UnreadCounts:
        return UnreadCounts.from_payload(await self._request("GET", "/api/messages/unread-count"))

    async def get_recent_unread(self, limit: int | None = None) -> dict[str, Any]:
        params = {"limit": limit} if limit is not None else None
        return await self._request("GET", "/api/messages/recent", params=params)

    async def mark_read(self, kind: str, message_id: int) -> int:
        payload = await self._request(
            "POST", "/api/messages/mark-read", json={"messageId": message_id, "messageType": kind}
        )
        self.cache.update_message(message_id, kind=kind, is_read=True)
        return int(payload["markedCount"])

    async def mark_batch_read(self, kind: str, message_ids: Iterable[int]) -> int:
        ids = list(message_ids)
        payload = await self._request(
            "PUT", "/api/messages/mark-read", json={"messageIds": ids, "messageType": kind}
        )
        for message_id in ids:
            self.cache.update_message(message_id, kind=kind, is_read=True)
        return int(payload["markedCount"])

    async def mark_all_read(self, kind: str = "system") -> int:
        payload = await self._request("POST", "/api/messages/mark-all-read", json={"messageType": kind})
        return int(payload["markedCount"])

    async def list_conversations(self, kind: str | None = None) -> list[dict[str, Any]]:
        params = {"type": kind} if kind is not None else None
        return await self._request("GET", "/api/conversations", params=params)

    async def mark_conversation_read(self, conversation_id: str) -> int:
        payload = await self._request("PUT", f"/api/conversations/{conversation_id}/read")
        # read flags differ per message author, so the history is fetched again
        self.cache.invalidate(conversation_id)
        return int(payload["markedCount"])

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    async def _history(self, conversation_id: str, path: str, *, refresh: bool) -> list[CachedMessage]:
        if not refresh:
            cached = self.cache.get(conversation_id)
            if cached:
                return cached
        payload = await self._request("GET", path)
        messages = [CachedMessage.from_payload(conversation_id, item) for item in payload]
        self.cache.put(conversation_id, messages)
        return messages

    async def project_history(self, project_id: int, *, refresh: bool = False) -> list[CachedMessage]:
        return await self._history(
            _conversation_id("project", project_id), f"/api/projects/{project_id}/messages", refresh=refresh
        )

    async def private_history(self, conversation_id: int, *, refresh: bool = False) -> list[CachedMessage]:
        return await self._history(
            _conversation_id("private", conversation_id),
            f"/api/private-conversations/{conversation_id}/messages",
            refresh=refresh,
        )

    async def send_project_message(self, project_id: int, content: str) -> CachedMessage:
        payload = await self._request("POST", f"/api/projects/{project_id}/messages", json={"content": content})
        message = CachedMessage.from_payload(_conversation_id("project", project_id), payload)
        self.cache.upsert_message(message)
        return message

    async def send_private_message(self, conversation_id: int, content: str) -> CachedMessage:
        payload = await self._request(
            "POST", f"/api/private-conversations/{conversation_id}/messages", json={"content": content}
        )
        message = CachedMessage.from_payload(_conversation_id("private", conversation_id), payload)
        self.cache.upsert_message(message)
        return message

    async def open_conversation(self, participant_id: int, project_id: int | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"participantId": participant_id}
        if project_id is not None:
            body["projectId"] = project_id
        return await self._request("POST", "/api/private-conversations", json=body)

    async def delete_message(self, kind: str, message_id: int) -> None:
        await self._request("DELETE", f"/api/messages/{kind}/{message_id}")
        self.cache.delete_message(message_id, kind=kind)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------
    async def issue_stream_token(self) -> str:
        payload = await self._request("GET", "/api/ws/token")
        return payload["token"]

    def event_stream(self, conversation_id: str, *, backoff: ReconnectBackoff | None = None) -> EventStream:
        settings = get_client_settings()
        return EventStream(
            self._http,
            conversation_id,
            token=self._token,
            backoff=backoff
            or ReconnectBackoff(settings.stream_reconnect_base_delay, settings.stream_reconnect_max_delay),
        )

    def apply_event(self, event: dict[str, Any]) -> None:
        """Reflect a delivery event in the cache."""

        event_type = event.get("type")
        conversation_id = event.get("conversationId")
        if not isinstance(conversation_id, str):
            return
        if event_type == "message" and isinstance(event.get("message"), dict):
            if conversation_id.startswith("inbox:"):
                return
            self.cache.upsert_message(CachedMessage.from_payload(conversation_id, event["message"]))
        elif event_type == "read":
            self.cache.invalidate(conversation_id)
