from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from thread_relay.backfill import BackfillEngine, BackfillOptions
from thread_relay.commands import (
    CommandHandler,
    InvalidCommand,
    SetChannel,
    SetWebhook,
    StartBackfill,
    classify,
)
from thread_relay.errors import DeliveryFailure
from thread_relay.mapping import MappingStore
from thread_relay.models import InboundMessage, RoutingRule

WEBHOOK = "https://discord.com/api/webhooks/77/secret"
BASE_TIME = datetime(2024, 5, 5, 12, 0, 0, tzinfo=timezone.utc)


class DummyAPI:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def create_message(self, channel_id: str, content: str) -> None:
        self.sent.append((channel_id, content))

    async def execute_webhook(
        self,
        endpoint: str,
        content: str,
        *,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        self.sent.append((endpoint, content))


class DummyHistory:
    def __init__(self, messages: list[InboundMessage]) -> None:
        self.messages = messages

    async def iter_history(self, thread_id: str) -> AsyncIterator[InboundMessage]:
        for message in self.messages:
            yield message


def make_message(text: str, *, minutes: int = 0, author_id: str = "42") -> InboundMessage:
    return InboundMessage(
        author_display_name="Operator",
        author_avatar_reference=None,
        body_text=text,
        attachment_urls=(),
        created_at=BASE_TIME + timedelta(minutes=minutes),
        message_id=str(500 + minutes),
        author_id=author_id,
    )


def build_handler(
    store: MappingStore,
    history: list[InboundMessage] | None = None,
    *,
    admin_ids: frozenset[str] = frozenset(),
) -> tuple[CommandHandler, DummyAPI]:
    api = DummyAPI()
    engine = BackfillEngine(
        store,
        api,
        DummyHistory(history or []),
        options=BackfillOptions(rate_per_second=0),
    )
    return CommandHandler(store, api, engine, admin_ids=admin_ids), api


def test_classify_recognises_commands() -> None:
    assert classify("setchannel 123") == SetChannel("123")
    assert classify("!setchannel 123 all") == SetChannel("123", backfill_requested=True)
    assert classify("SetChannel 123 ALL") == SetChannel("123", backfill_requested=True)
    assert classify(f"setwebhook {WEBHOOK}") == SetWebhook(WEBHOOK)
    assert classify("startbackfill") == StartBackfill()
    assert classify("!all") == StartBackfill()
    assert classify("  !start ") == StartBackfill(requires_flag=True)


def test_classify_flags_bad_arguments() -> None:
    assert isinstance(classify("setchannel"), InvalidCommand)
    assert isinstance(classify("setchannel general"), InvalidCommand)
    assert isinstance(classify("setchannel 1 2"), InvalidCommand)
    assert isinstance(classify("setwebhook https://example.com"), InvalidCommand)
    assert isinstance(classify("startbackfill now"), InvalidCommand)


def test_classify_ignores_ordinary_messages() -> None:
    assert classify("") is None
    assert classify("hello there") is None
    assert classify("set channel 1") is None
    assert classify("!allnight") is None


def test_setchannel_creates_mapping_and_replies() -> None:
    store = MappingStore()
    handler, api = build_handler(store)

    asyncio.run(handler.handle(SetChannel("20", True), "10", make_message("setchannel 20 all")))

    assert store.resolve("10") == RoutingRule("10", "20", None, True)
    assert len(api.sent) == 1
    thread, reply = api.sent[0]
    assert thread == "10"
    assert reply.startswith("✅")
    assert "<#20>" in reply
    assert "delivery: bot" in reply


def test_setwebhook_requires_destination() -> None:
    store = MappingStore()
    handler, api = build_handler(store)

    asyncio.run(handler.handle(SetWebhook(WEBHOOK), "10", make_message("setwebhook")))

    assert store.resolve("10") is None
    assert api.sent == [("10", "⚠️ This thread has no destination yet, run `setchannel` first.")]


def test_setwebhook_switches_to_identity_delivery() -> None:
    store = MappingStore([RoutingRule("10", "20")])
    handler, api = build_handler(store)

    asyncio.run(handler.handle(SetWebhook(WEBHOOK), "10", make_message("setwebhook")))

    rule = store.resolve("10")
    assert rule is not None
    assert rule.delivery_endpoint == WEBHOOK
    assert api.sent[0][1].startswith("✅ Webhook saved")


def test_invalid_command_replies_with_usage() -> None:
    handler, api = build_handler(MappingStore())

    command = classify("setchannel nope")
    assert command is not None
    asyncio.run(handler.handle(command, "10", make_message("setchannel nope")))

    assert api.sent == [("10", "⚠️ Usage: `setchannel <channel_id> [all]`")]


def test_non_admin_commands_are_ignored() -> None:
    store = MappingStore()
    handler, api = build_handler(store, admin_ids=frozenset({"1"}))

    asyncio.run(
        handler.handle(SetChannel("20"), "10", make_message("setchannel 20", author_id="2"))
    )

    assert store.resolve("10") is None
    assert api.sent == []


def test_start_backfill_copies_history_before_command() -> None:
    store = MappingStore([RoutingRule("10", "20")])
    history = [
        make_message("first", minutes=-2),
        make_message("second", minutes=-1),
        make_message("!all", minutes=0),
        make_message("after", minutes=1),
    ]
    handler, api = build_handler(store, history)

    async def runner() -> None:
        await handler.handle(StartBackfill(), "10", history[2])
        await handler.wait_idle()

    asyncio.run(runner())

    copied = [content.split(" (")[0] for channel, content in api.sent if channel == "20"]
    assert copied == ["first", "second", "!all"]
    assert api.sent[-1] == ("10", "✅ Backfill finished: 3 copied")


def test_start_without_flag_replies_instead_of_copying() -> None:
    store = MappingStore([RoutingRule("10", "20")])
    handler, api = build_handler(store, [make_message("old", minutes=-1)])

    async def runner() -> None:
        await handler.handle(StartBackfill(requires_flag=True), "10", make_message("!start"))
        await handler.wait_idle()

    asyncio.run(runner())

    assert api.sent == [
        ("10", "ℹ️ `!start` is off for this thread, map it with `all` or use `!all`.")
    ]


def test_start_with_flag_runs_backfill() -> None:
    store = MappingStore([RoutingRule("10", "20", None, True)])
    handler, api = build_handler(store, [make_message("old", minutes=-1)])

    async def runner() -> None:
        await handler.handle(StartBackfill(requires_flag=True), "10", make_message("!start"))
        await handler.wait_idle()

    asyncio.run(runner())

    assert api.sent[0] == ("20", "old (2024/05/05 20:59:00)")
    assert api.sent[-1] == ("10", "✅ Backfill finished: 1 copied")


def test_start_backfill_on_unmapped_thread_replies() -> None:
    handler, api = build_handler(MappingStore())

    asyncio.run(handler.handle(StartBackfill(), "10", make_message("!all")))

    assert api.sent == [("10", "⚠️ This thread has no destination yet, run `setchannel` first.")]


def test_start_only_applies_to_threads_mapped_with_all() -> None:
    store = MappingStore([RoutingRule("10", "20"), RoutingRule("11", "21", None, True)])
    handler, _ = build_handler(store)

    assert handler.applies(StartBackfill(requires_flag=True), "10") is False
    assert handler.applies(StartBackfill(requires_flag=True), "11") is True
    assert handler.applies(StartBackfill(requires_flag=True), "12") is True
    assert handler.applies(StartBackfill(), "10") is True
    assert handler.applies(SetChannel("30"), "10") is True


def test_unreadable_history_is_reported_in_thread() -> None:
    class BrokenHistory:
        async def iter_history(self, thread_id: str) -> AsyncIterator[InboundMessage]:
            yield make_message("old", minutes=-1)
            raise DeliveryFailure("history page: 403 Missing Access", status=403)

    store = MappingStore([RoutingRule("10", "20")])
    api = DummyAPI()
    engine = BackfillEngine(
        store, api, BrokenHistory(), options=BackfillOptions(rate_per_second=0)
    )
    handler = CommandHandler(store, api, engine)

    async def runner() -> None:
        await handler.handle(StartBackfill(), "10", make_message("!all"))
        await handler.wait_idle()

    asyncio.run(runner())

    assert api.sent == [
        ("20", "old (2024/05/05 20:59:00)"),
        ("10", "⚠️ Backfill stopped early, the thread history could not be read: 1 copied"),
    ]
