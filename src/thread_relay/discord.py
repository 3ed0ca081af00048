"""Discord REST client used for delivery and history fetches."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Sequence

import aiohttp

from .errors import DeliveryFailure, RateLimited
from .formatting import ZERO_WIDTH_SPACE
from .models import InboundMessage
from .utils import parse_discord_timestamp, snowflake_sort_key

_API_BASE = "https://discord.com/api/v10"
_CDN_BASE = "https://cdn.discordapp.com"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_HISTORY_PAGE_SIZE = 100
_DEFAULT_RETRY_AFTER = 1.0
_NO_MENTIONS = {"parse": []}
_WEBHOOK_NAME_LIMIT = 80
_RESERVED_NAME_RE = re.compile(r"(?i)(?<=disc)(?=ord)|(?<=cly)(?=de)")

# Default, reply, slash and context-menu command messages carry user content.
_RELAYABLE_MESSAGE_TYPES: set[int] = {0, 19, 20, 23}

logger = logging.getLogger(__name__)


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        user_agent: str | None = None,
        request_timeout: float = 15.0,
    ):
        self._session = session
        self._token = normalize_bot_token(token)
        self._user_agent = user_agent or _DEFAULT_USER_AGENT
        self._timeout = request_timeout

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self._token,
            "User-Agent": self._user_agent,
            "Accept": "application/json",
        }

    async def create_message(self, channel_id: str, content: str) -> None:
        """Post ``content`` into ``channel_id`` as the bot itself."""

        url = f"{_API_BASE}/channels/{channel_id}/messages"
        payload = {"content": content, "allowed_mentions": _NO_MENTIONS}
        await self._post(url, payload, headers=self._headers(), target=f"channel {channel_id}")

    async def execute_webhook(
        self,
        endpoint: str,
        content: str,
        *,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        """Post through a webhook, overriding its name and avatar per message."""

        payload: dict[str, Any] = {"content": content, "allowed_mentions": _NO_MENTIONS}
        name = webhook_username(username)
        if name:
            payload["username"] = name
        if avatar_url:
            payload["avatar_url"] = avatar_url
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        await self._post(
            endpoint,
            payload,
            headers=headers,
            params={"wait": "true"},
            target="webhook",
        )

    async def fetch_messages(
        self,
        channel_id: str,
        *,
        after: str | None = None,
        limit: int = _HISTORY_PAGE_SIZE,
    ) -> Sequence[Mapping[str, Any]]:
        """Return one page of raw message payloads, oldest first."""

        params = {"limit": str(max(1, min(limit, _HISTORY_PAGE_SIZE)))}
        if after:
            params["after"] = after
        url = f"{_API_BASE}/channels/{channel_id}/messages"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=timeout_cfg,
            ) as resp:
                if resp.status == 429:
                    raise await _rate_limited_from(resp)
                if resp.status >= 400:
                    body = await resp.text()
                    raise DeliveryFailure(
                        f"Discord returned {resp.status} for history of {channel_id}: {body[:200]}",
                        status=resp.status,
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailure(
                f"Could not fetch history of channel {channel_id}: {exc}"
            ) from exc

        if not isinstance(data, Sequence):
            return ()
        payloads = [item for item in data if isinstance(item, Mapping)]
        payloads.sort(key=lambda item: snowflake_sort_key(str(item.get("id") or "")))
        return payloads

    async def iter_history(self, thread_id: str) -> AsyncIterator[InboundMessage]:
        """Yield the thread's relayable messages from the oldest one.

        Pages are requested lazily with ``after=<last id>``; a rate limited
        page request waits out the cooldown and asks for the same page again.
        """

        after = "0"
        while True:
            try:
                page = await self.fetch_messages(thread_id, after=after)
            except RateLimited as exc:
                logger.warning(
                    "History fetch for thread %s rate limited, retrying in %.2fs",
                    thread_id,
                    exc.retry_after,
                )
                await asyncio.sleep(exc.retry_after)
                continue
            if not page:
                return
            for payload in page:
                after = str(payload.get("id") or after)
                if not is_relayable_payload(payload):
                    continue
                yield parse_message(payload)
            if len(page) < _HISTORY_PAGE_SIZE:
                return

    async def fetch_gateway_url(self) -> str:
        url = f"{_API_BASE}/gateway/bot"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.get(
                url, headers=self._headers(), timeout=timeout_cfg
            ) as resp:
                if resp.status >= 400:
                    raise DeliveryFailure(
                        f"Discord returned {resp.status} for gateway lookup",
                        status=resp.status,
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailure(f"Could not look up the gateway: {exc}") from exc
        return str(data.get("url") or "wss://gateway.discord.gg")

    async def _post(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str],
        target: str,
        params: Mapping[str, str] | None = None,
    ) -> None:
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.post(
                url,
                json=payload,
                headers=headers,
                params=params,
                timeout=timeout_cfg,
            ) as resp:
                if resp.status == 429:
                    raise await _rate_limited_from(resp)
                if resp.status >= 400:
                    body = await resp.text()
                    raise DeliveryFailure(
                        f"Discord returned {resp.status} when posting to {target}: {body[:200]}",
                        status=resp.status,
                    )
                await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailure(f"Could not post to {target}: {exc}") from exc


def normalize_bot_token(token: str) -> str:
    candidate = (token or "").strip()
    lowered = candidate.lower()
    if not candidate or lowered.startswith("bot ") or lowered.startswith("bearer "):
        return candidate
    return f"Bot {candidate}"


async def _rate_limited_from(resp: aiohttp.ClientResponse) -> RateLimited:
    retry_after: float | None = None
    scope = resp.headers.get("X-RateLimit-Scope")
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        data = None
    if isinstance(data, Mapping):
        try:
            retry_after = float(data.get("retry_after"))
        except (TypeError, ValueError):
            retry_after = None
        if data.get("global"):
            scope = "global"
    if retry_after is None:
        for header in ("Retry-After", "X-RateLimit-Reset-After"):
            raw = resp.headers.get(header)
            if raw is None:
                continue
            try:
                retry_after = float(raw)
            except ValueError:
                continue
            break
    return RateLimited(
        retry_after if retry_after is not None else _DEFAULT_RETRY_AFTER, scope=scope
    )


def is_relayable_payload(payload: Mapping[str, Any]) -> bool:
    message_type_raw = payload.get("type")
    try:
        message_type = int(str(message_type_raw))
    except (TypeError, ValueError):
        message_type = 0
    if message_type not in _RELAYABLE_MESSAGE_TYPES:
        return False
    return bool(payload.get("content") or payload.get("attachments"))


def avatar_url_for(author: Mapping[str, Any]) -> str | None:
    user_id = str(author.get("id") or "")
    avatar_hash = str(author.get("avatar") or "")
    if not user_id or not avatar_hash:
        return None
    extension = "gif" if avatar_hash.startswith("a_") else "png"
    return f"{_CDN_BASE}/avatars/{user_id}/{avatar_hash}.{extension}"


def parse_message(payload: Mapping[str, Any]) -> InboundMessage:
    """Build an :class:`InboundMessage` from a REST or gateway payload."""

    author = payload.get("author") or {}
    member = payload.get("member") or {}
    author_name = (
        str(member.get("nick") or "")
        or str(author.get("global_name") or "")
        or str(author.get("username") or "")
        or "Unknown"
    )
    attachments_raw = payload.get("attachments") or []
    attachment_urls = tuple(
        str(item.get("url") or item.get("proxy_url") or "").strip()
        for item in attachments_raw
        if isinstance(item, Mapping) and (item.get("url") or item.get("proxy_url"))
    )
    created_at = parse_discord_timestamp(payload.get("timestamp"))
    if created_at is None:
        created_at = datetime.now(timezone.utc)
    return InboundMessage(
        author_display_name=author_name,
        author_avatar_reference=avatar_url_for(author),
        body_text=str(payload.get("content") or ""),
        attachment_urls=attachment_urls,
        created_at=created_at,
        message_id=str(payload.get("id") or ""),
        author_id=str(author.get("id") or ""),
        author_is_bot=bool(author.get("bot")) or bool(payload.get("webhook_id")),
    )


def webhook_username(name: str | None) -> str | None:
    """Make an author name acceptable as a webhook username.

    Discord rejects webhook names containing ``discord`` or ``clyde``; a
    zero-width space inside those words keeps the name readable.
    """

    cleaned = (name or "").strip()
    if not cleaned:
        return None
    cleaned = _RESERVED_NAME_RE.sub(ZERO_WIDTH_SPACE, cleaned)
    return cleaned[:_WEBHOOK_NAME_LIMIT]
