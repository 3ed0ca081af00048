"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone, tzinfo
from typing import AsyncIterator

try:  # pragma: no cover - zoneinfo availability depends on platform
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
except ImportError:  # pragma: no cover - fallback for environments without zoneinfo
    ZoneInfo = None  # type: ignore[misc,assignment]
    ZoneInfoNotFoundError = LookupError  # type: ignore[misc,assignment]


class RateLimiter:
    """Simple rate limiter using sleep between events."""

    def __init__(self, rate_per_second: float):
        self.update_rate(rate_per_second)
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    def update_rate(self, rate_per_second: float) -> None:
        self._interval = 0.0 if rate_per_second <= 0 else 1.0 / rate_per_second

    async def wait(self) -> None:
        async with self._lock:
            if self._interval <= 0:
                return
            now = time.perf_counter()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = time.perf_counter() + self._interval


class ChannelProcessingGuard:
    """Serialise work on one thread across coroutines.

    Waiters are served in arrival order, so a live message queued behind a
    backfill is delivered after the whole history.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def _lock_for(self, thread_id: str) -> asyncio.Lock:
        async with self._registry_lock:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[thread_id] = lock
            return lock

    @asynccontextmanager
    async def lock(self, thread_id: str) -> AsyncIterator[None]:
        lock = await self._lock_for(thread_id)
        async with lock:
            yield

    async def acquire(self, thread_id: str) -> None:
        """Take the thread's lock for work that finishes in another task."""

        lock = await self._lock_for(thread_id)
        await lock.acquire()

    def release(self, thread_id: str) -> None:
        self._locks[thread_id].release()

    def is_locked(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Any other value returns ``default``.
    """

    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def parse_id_list(value: str | None) -> frozenset[str]:
    """Split a comma or whitespace separated list of numeric ids."""

    if not value:
        return frozenset()
    tokens = value.replace(",", " ").split()
    return frozenset(token for token in tokens if token.isdigit())


def _load_tokyo_timezone() -> tzinfo:
    if ZoneInfo is not None:
        try:
            return ZoneInfo("Asia/Tokyo")
        except ZoneInfoNotFoundError:  # pragma: no cover - missing tzdata
            pass
    return timezone(timedelta(hours=9), "JST")


TOKYO_TIMEZONE = _load_tokyo_timezone()


def as_tokyo_time(moment: datetime) -> datetime:
    """Return ``moment`` converted to Japan Standard Time."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(TOKYO_TIMEZONE)


def parse_discord_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def snowflake_sort_key(message_id: str) -> tuple[int, str]:
    return (int(message_id), message_id) if message_id.isdigit() else (0, message_id)
