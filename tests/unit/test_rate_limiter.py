from datetime import datetime

import pytest

from app.errors import RateLimitExceeded
from app.models import AutomationProfile, WindowKind
from services.rate_limiter import RateLimiter, window_end, window_start


def test_windows_align_to_calendar_boundaries():
    now = datetime(2026, 3, 10, 17, 45)  # Tuesday

    assert window_start(WindowKind.DAY, now) == datetime(2026, 3, 10)
    assert window_start(WindowKind.WEEK, now) == datetime(2026, 3, 9)
    assert window_start(WindowKind.MONTH, now) == datetime(2026, 3, 1)
    assert window_end(WindowKind.DAY, now) == datetime(2026, 3, 11)
    assert window_end(WindowKind.WEEK, now) == datetime(2026, 3, 16)
    assert window_end(WindowKind.MONTH, now) == datetime(2026, 4, 1)


def test_month_window_rolls_over_the_year():
    assert window_end(WindowKind.MONTH, datetime(2026, 12, 31, 23, 59)) == datetime(2027, 1, 1)


@pytest.mark.asyncio
async def test_daily_cap_blocks_the_third_attempt(session, make_profile, clock):
    profile = await make_profile(daily_limit=2)
    limiter = RateLimiter()

    for _ in range(2):
        await limiter.acquire(session, profile, clock())
        await session.commit()

    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.acquire(session, profile, clock())
    await session.rollback()

    assert excinfo.value.windows == ["day"]
    assert excinfo.value.retry_at == datetime(2026, 3, 11)


@pytest.mark.asyncio
async def test_blocked_attempt_does_not_touch_other_windows(session, make_profile, clock):
    profile = await make_profile(daily_limit=1, weekly_limit=10, monthly_limit=10)
    profile_id = profile.id
    limiter = RateLimiter()

    await limiter.acquire(session, profile, clock())
    await session.commit()
    with pytest.raises(RateLimitExceeded):
        await limiter.acquire(session, profile, clock())
    await session.rollback()

    profile = await session.get(AutomationProfile, profile_id, populate_existing=True)
    usage = {window.kind: window.count for window in await limiter.usage(session, profile, clock())}
    assert usage == {WindowKind.DAY: 1, WindowKind.WEEK: 1, WindowKind.MONTH: 1}


@pytest.mark.asyncio
async def test_weekly_cap_outlives_the_day(session, make_profile, clock):
    profile = await make_profile(daily_limit=5, weekly_limit=1)
    limiter = RateLimiter()

    await limiter.acquire(session, profile, clock())
    await session.commit()

    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.acquire(session, profile, clock.advance(days=1))
    await session.rollback()

    assert excinfo.value.windows == ["week"]
    assert excinfo.value.retry_at == datetime(2026, 3, 16)


@pytest.mark.asyncio
async def test_new_day_resets_the_daily_count(session, make_profile, clock):
    profile = await make_profile(daily_limit=1)
    limiter = RateLimiter()

    await limiter.acquire(session, profile, clock())
    await session.commit()

    usage = await limiter.acquire(session, profile, clock.advance(days=1))
    await session.commit()

    counts = {window.kind: window.count for window in usage}
    assert counts[WindowKind.DAY] == 1
    assert counts[WindowKind.WEEK] == 2
