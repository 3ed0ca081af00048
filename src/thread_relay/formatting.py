"""Conversion of thread messages into destination payloads."""

from __future__ import annotations

import re
from datetime import datetime

from .models import DeliveryMode, InboundMessage, OutboundPayload
from .utils import as_tokyo_time

ZERO_WIDTH_SPACE = "\u200b"
TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"
MESSAGE_LIMIT = 2000

# The ``@`` of ``<@123>``, ``<@!123>``, ``<@&123>``, ``@everyone`` and ``@here``.
_MENTION_TRIGGER_RE = re.compile(r"(?<=<)@(?=[!&]?[0-9])|@(?=everyone|here)")


def neutralize_mentions(text: str) -> str:
    """Break every mention trigger with a zero-width space after the ``@``."""

    if not text or "@" not in text:
        return text or ""
    return _MENTION_TRIGGER_RE.sub("@" + ZERO_WIDTH_SPACE, text)


def format_timestamp(moment: datetime) -> str:
    return as_tokyo_time(moment).strftime(TIMESTAMP_FORMAT)


def _chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` characters.

    Splits prefer a newline, then a space; the separator itself is dropped.
    """

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        split = remaining.rfind("\n", 0, limit)
        if split < limit // 4:
            split = remaining.rfind(" ", 0, limit)
        if split < limit // 4:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
            continue
        chunks.append(remaining[:split])
        remaining = remaining[split + 1 :]
    chunks.append(remaining)
    return chunks


def _pack_lines(lines: list[str], limit: int) -> list[str]:
    packed: list[str] = []
    for line in lines:
        for piece in _chunk_text(line, limit):
            if packed and len(packed[-1]) + 1 + len(piece) <= limit:
                packed[-1] = f"{packed[-1]}\n{piece}"
            else:
                packed.append(piece)
    return packed


def split_content(
    body: str,
    suffix: str,
    attachment_urls: list[str],
    limit: int = MESSAGE_LIMIT,
) -> list[str]:
    """Lay out one relayed message as posts of at most ``limit`` characters.

    The timestamp suffix follows the last piece of the body and attachment
    URLs come after it, so a split message still ends with its timestamp line.
    """

    tail = suffix + "".join(f"\n{url}" for url in attachment_urls)
    if len(body) + len(tail) <= limit:
        return [body + tail]
    if len(tail) <= limit // 2:
        parts = _chunk_text(body, limit - len(tail))
        parts[-1] += tail
        return parts
    # Too many attachment links to share a post with the text.
    parts = _chunk_text(body + suffix, limit)
    parts.extend(_pack_lines(attachment_urls, limit))
    return parts


def transform(message: InboundMessage, mode: DeliveryMode) -> OutboundPayload:
    """Build the outbound payload for ``message`` under ``mode``."""

    body = neutralize_mentions(message.body_text)
    suffix = f" ({format_timestamp(message.created_at)})"
    urls = [url for url in message.attachment_urls if url]
    content = "\n".join([body + suffix, *urls])
    parts = tuple(split_content(body, suffix, urls))

    if mode is DeliveryMode.IDENTITY_PRESERVING_POST:
        return OutboundPayload(
            content=content,
            display_name=message.author_display_name,
            avatar_reference=message.author_avatar_reference,
            parts=parts,
        )
    return OutboundPayload(content=content, parts=parts)
