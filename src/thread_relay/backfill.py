"""Ordered replay of a thread's history to its mapped destination."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Protocol

from .errors import (
    BackfillInProgress,
    DeliveryFailure,
    EndpointNotConfigured,
    NotMapped,
    RateLimited,
)
from .formatting import transform
from .mapping import MappingStore
from .models import BackfillReport, InboundMessage, OutboundPayload, RoutingRule
from .relay import DeliveryAPIProtocol, deliver_post
from .utils import ChannelProcessingGuard, RateLimiter

logger = logging.getLogger(__name__)

SkipPredicate = Callable[[InboundMessage], bool]


class HistorySourceProtocol(Protocol):
    def iter_history(self, thread_id: str) -> AsyncIterator[InboundMessage]: ...


@dataclass(slots=True)
class BackfillOptions:
    """Tunable pacing of a backfill run."""

    rate_per_second: float = 2.0
    max_rate_limit_retries: int = 0
    announce_progress: bool = False


def skip_bot_messages(message: InboundMessage) -> bool:
    return message.author_is_bot


class BackfillEngine:
    """Copy a thread's history oldest-first, one message in flight at a time.

    The per-thread guard is held for the whole run, so live messages of the
    same thread wait and land after the copied history. Rate limit responses
    pause the run and retry the same message; a run is never restarted.
    """

    def __init__(
        self,
        store: MappingStore,
        api: DeliveryAPIProtocol,
        history: HistorySourceProtocol,
        *,
        guard: ChannelProcessingGuard | None = None,
        options: BackfillOptions | None = None,
        skip: SkipPredicate | None = skip_bot_messages,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._api = api
        self._history = history
        self._guard = guard
        self._options = options or BackfillOptions()
        self._skip = skip
        self._sleep = sleep
        self._rate = RateLimiter(self._options.rate_per_second)
        self._active: set[str] = set()

    def is_running(self, thread_id: str) -> bool:
        return str(thread_id) in self._active

    async def backfill(
        self, thread_id: str, *, until: datetime | None = None
    ) -> BackfillReport:
        """Replay the history of ``thread_id``.

        Messages created after ``until`` are left to the live relay.
        """

        task = await self.start(thread_id, until=until)
        return await task

    async def start(
        self, thread_id: str, *, until: datetime | None = None
    ) -> asyncio.Task[BackfillReport]:
        """Reserve ``thread_id`` and replay its history in a background task.

        The thread's guard is already held when this returns, so messages
        handled afterwards queue behind the whole history.
        """

        thread_id = str(thread_id)
        rule = self._store.resolve(thread_id)
        if rule is None:
            raise NotMapped(thread_id)
        if thread_id in self._active:
            raise BackfillInProgress(thread_id)

        self._active.add(thread_id)
        try:
            if self._guard is not None:
                await self._guard.acquire(thread_id)
        except BaseException:
            self._active.discard(thread_id)
            raise
        return asyncio.create_task(
            self._run_reserved(rule, until), name=f"backfill-{thread_id}"
        )

    async def _run_reserved(
        self, rule: RoutingRule, until: datetime | None
    ) -> BackfillReport:
        try:
            # The rule may have changed while waiting for the guard.
            current = self._store.resolve(rule.source_thread_id) or rule
            return await self._run(current, until)
        finally:
            if self._guard is not None:
                self._guard.release(rule.source_thread_id)
            self._active.discard(rule.source_thread_id)

    async def _run(self, rule: RoutingRule, until: datetime | None) -> BackfillReport:
        thread_id = rule.source_thread_id
        report = BackfillReport(thread_id=thread_id)
        logger.info(
            "Backfill started: thread %s -> channel %s (%s)",
            thread_id,
            rule.destination_channel_id,
            rule.delivery_mode.value,
        )
        await self._announce(rule, "🔄 Copying every message of the source thread…")

        try:
            async for message in self._history.iter_history(thread_id):
                if until is not None and message.created_at > until:
                    break
                if self._skip is not None and self._skip(message):
                    report.skipped += 1
                    continue
                payload = transform(message, rule.delivery_mode)
                await self._deliver_one(rule, message, payload, report)
        except DeliveryFailure as exc:
            logger.error("Backfill of thread %s could not read the history: %s", thread_id, exc)
            report.history_error = str(exc)

        logger.info(
            "Backfill finished for thread %s: %d delivered, %d failed, %d skipped, "
            "%d rate limit pauses",
            thread_id,
            report.delivered,
            report.failed,
            report.skipped,
            report.rate_limited,
        )
        if report.history_error is not None:
            summary = (
                f"⚠️ Copy stopped early, the source thread could not be read "
                f"({report.delivered} messages copied)"
            )
        else:
            summary = f"✅ Copied {report.delivered} messages from the source thread"
            if report.failed:
                summary += f" ({report.failed} could not be delivered)"
        await self._announce(rule, summary)
        return report

    async def _deliver_one(
        self,
        rule: RoutingRule,
        message: InboundMessage,
        payload: OutboundPayload,
        report: BackfillReport,
    ) -> None:
        # Posts of a split message are retried one by one, never resent.
        for content in payload.posts:
            if not await self._deliver_post(rule, message, payload, content, report):
                report.failed += 1
                report.failed_message_ids.append(message.message_id)
                return
        report.delivered += 1

    async def _deliver_post(
        self,
        rule: RoutingRule,
        message: InboundMessage,
        payload: OutboundPayload,
        content: str,
        report: BackfillReport,
    ) -> bool:
        cap = self._options.max_rate_limit_retries
        attempts = 0
        while True:
            await self._rate.wait()
            try:
                await deliver_post(self._api, rule, payload, content)
            except RateLimited as exc:
                attempts += 1
                report.rate_limited += 1
                if cap > 0 and attempts > cap:
                    logger.error(
                        "Giving up on message %s of thread %s after %d rate limit retries",
                        message.message_id or "?",
                        rule.source_thread_id,
                        cap,
                    )
                    return False
                logger.warning(
                    "Backfill of thread %s rate limited, pausing %.2fs before message %s",
                    rule.source_thread_id,
                    exc.retry_after,
                    message.message_id or "?",
                )
                await self._sleep(exc.retry_after)
                continue
            except (DeliveryFailure, EndpointNotConfigured) as exc:
                logger.error(
                    "Backfill could not deliver message %s of thread %s: %s",
                    message.message_id or "?",
                    rule.source_thread_id,
                    exc,
                )
                return False
            return True

    async def _announce(self, rule: RoutingRule, text: str) -> None:
        if not self._options.announce_progress:
            return
        try:
            await self._api.create_message(rule.destination_channel_id, text)
        except (DeliveryFailure, RateLimited) as exc:
            logger.warning(
                "Could not post backfill notice to channel %s: %s",
                rule.destination_channel_id,
                exc,
            )
