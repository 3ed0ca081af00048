"""Live relay of thread messages to their mapped destinations."""

from __future__ import annotations

import logging
from typing import Protocol

from .errors import DeliveryFailure, EndpointNotConfigured, RateLimited
from .formatting import transform
from .mapping import MappingStore
from .models import DeliveryMode, InboundMessage, OutboundPayload, RoutingRule
from .utils import ChannelProcessingGuard

logger = logging.getLogger(__name__)


class DeliveryAPIProtocol(Protocol):
    async def create_message(self, channel_id: str, content: str) -> None: ...

    async def execute_webhook(
        self,
        endpoint: str,
        content: str,
        *,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> None: ...


async def deliver_post(
    api: DeliveryAPIProtocol, rule: RoutingRule, payload: OutboundPayload, content: str
) -> None:
    """Send one post of ``payload`` through the path selected by ``rule``."""

    if rule.delivery_mode is DeliveryMode.IDENTITY_PRESERVING_POST:
        if not rule.delivery_endpoint:
            raise EndpointNotConfigured(rule.source_thread_id)
        await api.execute_webhook(
            rule.delivery_endpoint,
            content,
            username=payload.display_name,
            avatar_url=payload.avatar_reference,
        )
        return
    await api.create_message(rule.destination_channel_id, content)


async def deliver(
    api: DeliveryAPIProtocol, rule: RoutingRule, payload: OutboundPayload
) -> None:
    """Send every post of ``payload`` in order; the first failure stops the rest."""

    for content in payload.posts:
        await deliver_post(api, rule, payload, content)


class RelayDispatcher:
    """Forward each live thread message once, in the mapped delivery mode."""

    def __init__(
        self,
        store: MappingStore,
        api: DeliveryAPIProtocol,
        *,
        guard: ChannelProcessingGuard | None = None,
    ) -> None:
        self._store = store
        self._api = api
        self._guard = guard

    async def on_message(self, message: InboundMessage, thread_id: str) -> bool:
        """Relay ``message``; return True when it reached the destination."""

        rule = self._store.resolve(thread_id)
        if rule is None:
            logger.debug("Thread %s is not mapped, ignoring message", thread_id)
            return False

        if self._guard is None:
            return await self._relay(message, rule)
        async with self._guard.lock(rule.source_thread_id):
            # A backfill may have replaced the rule while this message waited.
            rule = self._store.resolve(thread_id) or rule
            return await self._relay(message, rule)

    async def _relay(self, message: InboundMessage, rule: RoutingRule) -> bool:
        payload = transform(message, rule.delivery_mode)
        try:
            await deliver(self._api, rule, payload)
        except (DeliveryFailure, RateLimited, EndpointNotConfigured) as exc:
            logger.error(
                "Failed to relay message %s from thread %s to channel %s: %s",
                message.message_id or "?",
                rule.source_thread_id,
                rule.destination_channel_id,
                exc,
            )
            return False
        logger.info(
            "Relayed message %s: thread %s -> channel %s (%s)",
            message.message_id or "?",
            rule.source_thread_id,
            rule.destination_channel_id,
            rule.delivery_mode.value,
        )
        return True
