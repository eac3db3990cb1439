from __future__ import annotations

import asyncio
import time

from sms_relay.utils import (
    CancellationToken,
    KeyedLockGuard,
    mask_token,
    parse_bool,
    parse_delay_setting,
    parse_positive_int,
)


def test_parse_delay_setting_ms_backwards_compatibility() -> None:
    assert parse_delay_setting("2000", 0.0) == 2.0


def test_parse_delay_setting_seconds_float() -> None:
    assert parse_delay_setting("1.50", 0.0) == 1.5


def test_parse_delay_setting_invalid_returns_default() -> None:
    assert parse_delay_setting("not-a-number", 2.0) == 2.0


def test_parse_bool_supports_truthy_and_falsy() -> None:
    assert parse_bool("on") is True
    assert parse_bool("NO") is False
    assert parse_bool(None, default=True) is True
    assert parse_bool("unexpected", default=False) is False


def test_parse_positive_int_rejects_zero() -> None:
    assert parse_positive_int("0", 20) == 20
    assert parse_positive_int(" 7 ", 20) == 7


def test_mask_token_hides_middle() -> None:
    assert mask_token("123456:ABCDEFGH") == "1234…EFGH"
    assert mask_token("") == "—"


def test_cancellation_token_wakes_sleep() -> None:
    async def runner() -> tuple[bool, float]:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel)
        start = time.perf_counter()
        woke = await token.sleep(10)
        return woke, time.perf_counter() - start

    woke, elapsed = asyncio.run(runner())
    assert woke is True
    assert elapsed < 5


def test_cancellation_token_sleep_times_out() -> None:
    async def runner() -> bool:
        token = CancellationToken()
        return await token.sleep(0.01)

    assert asyncio.run(runner()) is False


def test_keyed_lock_guard_releases_unused_locks() -> None:
    guard = KeyedLockGuard()

    async def runner() -> None:
        async with guard.lock("a"):
            assert len(guard) == 1
        assert len(guard) == 0

    asyncio.run(runner())
