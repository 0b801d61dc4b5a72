"""
test_rate_limiter.py — Daily per-user rate-limit windows.

Run with:
    pytest tests/test_rate_limiter.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from backend.app.notifications.models import ChannelType
from backend.app.notifications.rate_limiter import RateLimiter, day_window
from backend.app.notifications.records import RateLimitCounter

SMS = ChannelType.SMS


@pytest.fixture
def limiter(session_factory, clock) -> RateLimiter:
    return RateLimiter(session_factory, clock=clock)


async def _rows(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(RateLimitCounter))


class TestDayWindow:

    def test_window_is_utc_calendar_day(self):
        start, end = day_window(datetime(2024, 3, 4, 23, 59, 59, tzinfo=timezone.utc))
        assert start == datetime(2024, 3, 4, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_other_timezones_normalised(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        start, _ = day_window(datetime(2024, 3, 5, 2, 0, tzinfo=ist))
        assert start == datetime(2024, 3, 4, tzinfo=timezone.utc)


class TestReserve:

    async def test_allows_up_to_limit(self, limiter):
        decisions = [await limiter.reserve(7, SMS, "marketing", 2) for _ in range(3)]
        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[1].current == 2
        assert decisions[2].remaining == 0

    async def test_reset_at_is_window_end(self, limiter, clock):
        decision = await limiter.reserve(7, SMS, "marketing", 5)
        assert decision.reset_at == datetime(2024, 3, 5, tzinfo=timezone.utc)
        assert decision.to_dict()["reset_at"] == "2024-03-05T00:00:00+00:00"

    async def test_keys_are_independent(self, limiter):
        assert (await limiter.reserve(7, SMS, "marketing", 1)).allowed
        assert (await limiter.reserve(7, SMS, "transactional", 1)).allowed
        assert (await limiter.reserve(7, ChannelType.EMAIL, "marketing", 1)).allowed
        assert (await limiter.reserve(8, SMS, "marketing", 1)).allowed
        assert not (await limiter.reserve(7, SMS, "marketing", 1)).allowed

    async def test_new_day_resets(self, limiter, clock):
        assert (await limiter.reserve(7, SMS, "marketing", 1)).allowed
        assert not (await limiter.reserve(7, SMS, "marketing", 1)).allowed
        clock.advance(days=1)
        decision = await limiter.reserve(7, SMS, "marketing", 1)
        assert decision.allowed
        assert decision.current == 1

    async def test_concurrent_reservations_never_exceed_limit(self, limiter):
        decisions = await asyncio.gather(*(limiter.reserve(7, SMS, "marketing", 3) for _ in range(8)))
        assert sum(d.allowed for d in decisions) == 3
        assert (await limiter.check(7, SMS, "marketing", 3)).current == 3


class TestCheckIncrementRelease:

    async def test_check_is_read_only(self, limiter, session_factory):
        decision = await limiter.check(7, SMS, "marketing", 1)
        assert decision.allowed
        assert decision.current == 0
        assert await _rows(session_factory) == 0

    async def test_increment_counts_unconditionally(self, limiter):
        assert await limiter.increment(7, SMS, "marketing") == 1
        assert await limiter.increment(7, SMS, "marketing") == 2
        assert not (await limiter.check(7, SMS, "marketing", 2)).allowed

    async def test_release_returns_slot(self, limiter):
        await limiter.reserve(7, SMS, "marketing", 1)
        await limiter.release(7, SMS, "marketing")
        assert (await limiter.check(7, SMS, "marketing", 1)).current == 0

    async def test_release_never_negative(self, limiter):
        await limiter.reserve(7, SMS, "marketing", 1)
        await limiter.release(7, SMS, "marketing")
        await limiter.release(7, SMS, "marketing")
        assert (await limiter.check(7, SMS, "marketing", 1)).current == 0


class TestReapExpired:

    async def test_removes_only_old_windows(self, limiter, clock, session_factory):
        await limiter.reserve(7, SMS, "marketing", 5)       # 2024-03-04
        clock.advance(days=1)
        await limiter.reserve(7, SMS, "marketing", 5)       # 2024-03-05
        clock.advance(days=1, hours=1)                      # 2024-03-06 11:00

        # 03-04 window ended 03-05 00:00, > 24h ago; 03-05 window ended 03-06 00:00
        assert await limiter.reap_expired(timedelta(hours=24)) == 1
        assert await _rows(session_factory) == 1

    async def test_nothing_to_reap(self, limiter):
        assert await limiter.reap_expired() == 0
