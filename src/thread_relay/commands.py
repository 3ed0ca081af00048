"""Operator commands typed inside a source thread."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union

from .backfill import BackfillEngine
from .errors import BackfillInProgress, ConfigParseError, DeliveryFailure, NotMapped, RateLimited
from .mapping import BACKFILL_FLAG, MappingStore, is_valid_id, is_webhook_url
from .models import BackfillReport, InboundMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SetChannel:
    channel_id: str
    backfill_requested: bool = False


@dataclass(frozen=True, slots=True)
class SetWebhook:
    endpoint: str


@dataclass(frozen=True, slots=True)
class StartBackfill:
    requires_flag: bool = False


@dataclass(frozen=True, slots=True)
class InvalidCommand:
    name: str
    usage: str


Command = Union[SetChannel, SetWebhook, StartBackfill, InvalidCommand]

_USAGE = {
    "setchannel": "setchannel <channel_id> [all]",
    "setwebhook": "setwebhook <webhook_url>",
    "startbackfill": "startbackfill",
}


def classify(text: str) -> Command | None:
    """Recognise a command in ``text``; ordinary messages give ``None``."""

    stripped = (text or "").strip()
    if not stripped:
        return None
    if stripped == "!all":
        return StartBackfill()
    if stripped == "!start":
        return StartBackfill(requires_flag=True)

    keyword, *args = stripped.split()
    name = keyword.lower().lstrip("!")
    if name not in _USAGE:
        return None

    if name == "setchannel":
        if len(args) == 1 and is_valid_id(args[0]):
            return SetChannel(channel_id=args[0])
        if len(args) == 2 and is_valid_id(args[0]) and args[1].lower() == BACKFILL_FLAG:
            return SetChannel(channel_id=args[0], backfill_requested=True)
        return InvalidCommand(name, _USAGE[name])
    if name == "setwebhook":
        if len(args) == 1 and is_webhook_url(args[0]):
            return SetWebhook(endpoint=args[0])
        return InvalidCommand(name, _USAGE[name])
    if args:
        return InvalidCommand(name, _USAGE[name])
    return StartBackfill()


class ReplyAPIProtocol(Protocol):
    async def create_message(self, channel_id: str, content: str) -> None: ...


class CommandHandler:
    """Apply classified commands and report the outcome back into the thread."""

    def __init__(
        self,
        store: MappingStore,
        api: ReplyAPIProtocol,
        engine: BackfillEngine,
        *,
        admin_ids: frozenset[str] = frozenset(),
    ) -> None:
        self._store = store
        self._api = api
        self._engine = engine
        self._admin_ids = admin_ids
        self._tasks: set[asyncio.Task[None]] = set()

    def is_authorised(self, message: InboundMessage) -> bool:
        if not self._admin_ids:
            return True
        return message.author_id in self._admin_ids

    def applies(self, command: Command, thread_id: str) -> bool:
        """Whether ``command`` is a command in ``thread_id`` rather than plain text.

        ``!start`` only means something for rules mapped with ``all``;
        elsewhere it is an ordinary message and gets relayed.
        """

        if isinstance(command, StartBackfill) and command.requires_flag:
            rule = self._store.resolve(thread_id)
            return rule is None or rule.backfill_requested
        return True

    async def handle(
        self, command: Command, thread_id: str, message: InboundMessage
    ) -> None:
        if not self.is_authorised(message):
            logger.warning(
                "Ignoring command from user %s in thread %s: not an admin",
                message.author_id or "?",
                thread_id,
            )
            return

        if isinstance(command, InvalidCommand):
            await self._reply(thread_id, f"⚠️ Usage: `{command.usage}`")
        elif isinstance(command, SetChannel):
            await self._set_channel(command, thread_id)
        elif isinstance(command, SetWebhook):
            await self._set_webhook(command, thread_id)
        elif isinstance(command, StartBackfill):
            await self._start_backfill(command, thread_id, message.created_at)

    async def wait_idle(self) -> None:
        """Wait for backfills started by commands to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    async def _set_channel(self, command: SetChannel, thread_id: str) -> None:
        try:
            rule = self._store.set_destination(
                thread_id, command.channel_id, command.backfill_requested
            )
        except ConfigParseError as exc:
            await self._reply(thread_id, f"⚠️ Could not set the destination: {exc.reason}")
            return
        mode = "webhook" if rule.delivery_endpoint else "bot"
        await self._reply(
            thread_id,
            f"✅ Messages of this thread will be copied to <#{rule.destination_channel_id}> "
            f"(delivery: {mode}, backfill on `!start`: "
            f"{'on' if rule.backfill_requested else 'off'})",
        )

    async def _set_webhook(self, command: SetWebhook, thread_id: str) -> None:
        try:
            self._store.set_delivery_endpoint(thread_id, command.endpoint)
        except NotMapped:
            await self._reply(
                thread_id, "⚠️ This thread has no destination yet, run `setchannel` first."
            )
            return
        except ConfigParseError as exc:
            await self._reply(thread_id, f"⚠️ Could not set the webhook: {exc.reason}")
            return
        await self._reply(
            thread_id, "✅ Webhook saved, messages will keep their author's name and avatar."
        )

    async def _start_backfill(
        self, command: StartBackfill, thread_id: str, until: datetime
    ) -> None:
        rule = self._store.resolve(thread_id)
        if rule is None:
            await self._reply(
                thread_id, "⚠️ This thread has no destination yet, run `setchannel` first."
            )
            return
        if command.requires_flag and not rule.backfill_requested:
            await self._reply(
                thread_id,
                "ℹ️ `!start` is off for this thread, map it with `all` or use `!all`.",
            )
            return
        if self._engine.is_running(thread_id):
            await self._reply(thread_id, "⚠️ A backfill of this thread is already running.")
            return

        try:
            run = await self._engine.start(thread_id, until=until)
        except (NotMapped, BackfillInProgress) as exc:
            await self._reply(thread_id, f"⚠️ Backfill not started: {exc}")
            return

        task = asyncio.create_task(
            self._report_backfill(thread_id, run), name=f"backfill-report-{thread_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _report_backfill(
        self, thread_id: str, run: asyncio.Task[BackfillReport]
    ) -> None:
        try:
            report = await run
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Backfill of thread %s crashed", thread_id)
            await self._reply(
                thread_id, "⚠️ Backfill stopped with an internal error, see the logs."
            )
            return
        await self._reply(thread_id, _describe_report(report))

    async def _reply(self, thread_id: str, text: str) -> None:
        try:
            await self._api.create_message(thread_id, text)
        except (DeliveryFailure, RateLimited) as exc:
            logger.warning("Could not reply in thread %s: %s", thread_id, exc)


def _describe_report(report: BackfillReport) -> str:
    if report.history_error is not None:
        text = (
            f"⚠️ Backfill stopped early, the thread history could not be read: "
            f"{report.delivered} copied"
        )
    else:
        text = f"✅ Backfill finished: {report.delivered} copied"
    if report.failed:
        text += f", {report.failed} failed"
    if report.skipped:
        text += f", {report.skipped} skipped"
    return text
