"""Data models used across the relay service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Sequence


class DeliveryMode(str, Enum):
    """How a relayed message reaches its destination."""

    DIRECT_POST = "direct"
    IDENTITY_PRESERVING_POST = "webhook"


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """Forwarding relationship from one source thread to one destination."""

    source_thread_id: str
    destination_channel_id: str
    delivery_endpoint: str | None = None
    backfill_requested: bool = False

    @property
    def delivery_mode(self) -> DeliveryMode:
        if self.delivery_endpoint:
            return DeliveryMode.IDENTITY_PRESERVING_POST
        return DeliveryMode.DIRECT_POST

    def with_updates(
        self,
        *,
        destination_channel_id: str | None = None,
        delivery_endpoint: str | None = None,
        backfill_requested: bool | None = None,
        clear_endpoint: bool = False,
    ) -> "RoutingRule":
        endpoint = delivery_endpoint if delivery_endpoint is not None else self.delivery_endpoint
        if clear_endpoint:
            endpoint = None
        return RoutingRule(
            source_thread_id=self.source_thread_id,
            destination_channel_id=destination_channel_id or self.destination_channel_id,
            delivery_endpoint=endpoint,
            backfill_requested=(
                backfill_requested
                if backfill_requested is not None
                else self.backfill_requested
            ),
        )


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """Read-only view of a source thread message."""

    author_display_name: str
    author_avatar_reference: str | None
    body_text: str
    attachment_urls: Sequence[str]
    created_at: datetime
    message_id: str = ""
    author_id: str = ""
    author_is_bot: bool = False


@dataclass(frozen=True, slots=True)
class OutboundPayload:
    """Destination-ready message produced by the transformer."""

    content: str
    display_name: str | None = None
    avatar_reference: str | None = None
    parts: tuple[str, ...] = ()

    @property
    def posts(self) -> tuple[str, ...]:
        """Contents of the destination messages, in sending order."""

        return self.parts or (self.content,)


@dataclass(slots=True)
class BackfillReport:
    """Outcome of one backfill run."""

    thread_id: str
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: int = 0
    failed_message_ids: list[str] = field(default_factory=list)
    history_error: str | None = None

    @property
    def processed(self) -> int:
        return self.delivered + self.failed + self.skipped
