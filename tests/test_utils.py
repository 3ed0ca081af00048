import asyncio
from datetime import datetime, timedelta, timezone

from thread_relay.utils import (
    ChannelProcessingGuard,
    as_tokyo_time,
    parse_bool,
    parse_discord_timestamp,
    parse_id_list,
    snowflake_sort_key,
)


def test_parse_bool_supports_truthy_and_falsy() -> None:
    assert parse_bool("on") is True
    assert parse_bool("NO") is False
    assert parse_bool(None, default=True) is True
    assert parse_bool("unexpected", default=False) is False


def test_parse_id_list_keeps_numeric_tokens() -> None:
    assert parse_id_list("1, 2 x 3,,") == frozenset({"1", "2", "3"})
    assert parse_id_list(None) == frozenset()


def test_parse_discord_timestamp_handles_z_suffix() -> None:
    parsed = parse_discord_timestamp("2024-01-02T03:04:05.123000Z")

    assert parsed == datetime(2024, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc)
    assert parse_discord_timestamp("garbage") is None
    assert parse_discord_timestamp(None) is None


def test_as_tokyo_time_is_nine_hours_ahead() -> None:
    moment = as_tokyo_time(datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc))

    assert moment.utcoffset() == timedelta(hours=9)
    assert (moment.year, moment.month, moment.day, moment.hour) == (2024, 6, 1, 9)


def test_snowflake_sort_key_orders_numerically() -> None:
    ids = ["100", "99", "1000"]

    assert sorted(ids, key=snowflake_sort_key) == ["99", "100", "1000"]


def test_guard_serialises_work_in_arrival_order() -> None:
    guard = ChannelProcessingGuard()
    order: list[str] = []

    async def worker(name: str, delay: float) -> None:
        async with guard.lock("1"):
            order.append(f"{name}-start")
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    async def runner() -> None:
        first = asyncio.create_task(worker("a", 0.05))
        await asyncio.sleep(0)
        assert guard.is_locked("1")
        second = asyncio.create_task(worker("b", 0))
        await asyncio.gather(first, second)
        assert not guard.is_locked("1")

    asyncio.run(runner())

    assert order == ["a-start", "a-end", "b-start", "b-end"]
