"""Delivery channel wiring: local registry plus optional Redis relay."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from app.config import get_settings
from app.monitoring.metrics import delivery_relay_errors_total

from .registry import DeliveryReport, DeliveryRegistry
from .transport import DELIVERY_TOPIC, RedisRelay, RelayConfig, RelayUnavailableError, Subscription

logger = logging.getLogger(__name__)


class DeliveryChannel:
    """Fan-out entry point used by HTTP handlers and services.

    Events are always delivered to local subscribers first. When a relay is
    configured they are also published, tagged with this node's id, so that
    other nodes can hand them to their own subscribers.
    """

    def __init__(self, registry: DeliveryRegistry, relay: RedisRelay | None = None, *, node_id: str) -> None:
        self.registry = registry
        self._relay = relay
        self._node_id = node_id
        self._subscription: Subscription | None = None
        self._relay_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def relay_active(self) -> bool:
        return self._subscription is not None

    async def start(self) -> None:
        if self._relay is None or not self._relay.enabled:
            return
        try:
            await self._relay.start()
            self._subscription = await self._relay.subscribe(DELIVERY_TOPIC, self._handle_remote)
        except RelayUnavailableError:
            self._warn_relay("startup")
            delivery_relay_errors_total.inc(reason="startup")
            return
        self._relay_warning_logged = False
        logger.info("Delivery relay subscribed on %s", self._subscription.channel)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        if self._relay is not None:
            await self._relay.stop()
        await self.registry.clear()

    async def publish(
        self,
        conversation_id: str,
        event: dict[str, Any],
        *,
        exclude_user_id: int | None = None,
    ) -> DeliveryReport:
        report = await self.registry.broadcast(conversation_id, event, exclude_user_id=exclude_user_id)
        if self._relay is not None and self._relay.connected:
            envelope = {
                "origin": self._node_id,
                "conversationId": conversation_id,
                "excludeUserId": exclude_user_id,
                "event": event,
            }
            try:
                await self._relay.publish(DELIVERY_TOPIC, envelope)
            except RelayUnavailableError:
                self._warn_relay("publish")
                delivery_relay_errors_total.inc(reason="publish")
            else:
                self._relay_warning_logged = False
        return report

    async def _handle_remote(self, envelope: dict[str, Any]) -> None:
        if envelope.get("origin") == self._node_id:
            return
        conversation_id = envelope.get("conversationId")
        event = envelope.get("event")
        if not isinstance(conversation_id, str) or not isinstance(event, dict):
            logger.debug("Ignoring malformed relay envelope")
            return
        await self.registry.broadcast(conversation_id, event, exclude_user_id=envelope.get("excludeUserId"))

    def _warn_relay(self, action: str) -> None:
        if self._relay_warning_logged:
            return
        logger.warning(
            "Delivery relay unavailable during %s; continuing with local-only delivery",
            action,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        self._relay_warning_logged = True


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

relay = RedisRelay(
    RelayConfig(
        redis_url=settings.realtime_redis_url,
        namespace=settings.realtime_namespace,
        node_id=_node_id,
    )
)
registry = DeliveryRegistry(queue_size=settings.delivery_queue_size)
delivery_channel = DeliveryChannel(registry, relay, node_id=_node_id)


async def startup_realtime() -> None:
    await delivery_channel.start()


async def shutdown_realtime() -> None:
    await delivery_channel.stop()


def get_delivery_channel() -> DeliveryChannel:
    return delivery_channel


def get_registry() -> DeliveryRegistry:
    return registry


__all__ = [
    "DeliveryChannel",
    "startup_realtime",
    "shutdown_realtime",
    "get_delivery_channel",
    "get_registry",
]
