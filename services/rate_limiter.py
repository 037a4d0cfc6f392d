"""
Per-profile submission caps over calendar-aligned day, week and month windows.

Counters live in ``rate_limit_windows``. All three are incremented by one
UPDATE statement that only applies when none of them has reached its cap, so
concurrent workers can never push a profile past a limit.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.errors import RateLimitExceeded
from app.models import AutomationProfile, RateLimitWindow, WindowKind
from app.observability import get_logger

logger = get_logger(__name__)


def window_start(kind: WindowKind, now: datetime) -> datetime:
    """Start of the window containing ``now``: midnight UTC, ISO week start or the 1st of the month."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if kind is WindowKind.DAY:
        return day
    if kind is WindowKind.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def window_end(kind: WindowKind, now: datetime) -> datetime:
    start = window_start(kind, now)
    if kind is WindowKind.DAY:
        return start + timedelta(days=1)
    if kind is WindowKind.WEEK:
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def profile_caps(profile: AutomationProfile) -> dict[WindowKind, int]:
    return {
        WindowKind.DAY: profile.daily_limit,
        WindowKind.WEEK: profile.weekly_limit,
        WindowKind.MONTH: profile.monthly_limit,
    }


@dataclass(frozen=True)
class WindowUsage:
    kind: WindowKind
    count: int
    cap: int
    resets_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.cap - self.count)


class RateLimiter:
    """Compare-and-increment submission counters for a profile."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def _ensure_windows(
        self, session: AsyncSession, profile_id: str, now: datetime
    ) -> dict[WindowKind, RateLimitWindow]:
        starts = {kind: window_start(kind, now) for kind in WindowKind}
        stmt = select(RateLimitWindow).where(
            RateLimitWindow.profile_id == profile_id,
            RateLimitWindow.kind.in_([kind.value for kind in WindowKind]),
        )
        result = await session.execute(stmt)
        windows: dict[WindowKind, RateLimitWindow] = {}
        for row in result.scalars():
            kind = WindowKind(row.kind)
            if row.window_start == starts[kind]:
                windows[kind] = row

        missing = [kind for kind in WindowKind if kind not in windows]
        for kind in missing:
            row = RateLimitWindow(profile_id=profile_id, kind=kind.value, window_start=starts[kind], count=0)
            session.add(row)
            windows[kind] = row
        if missing:
            await session.flush()
        return windows

    async def usage(self, session: AsyncSession, profile: AutomationProfile, now: datetime) -> list[WindowUsage]:
        caps = profile_caps(profile)
        starts = {kind: window_start(kind, now) for kind in WindowKind}
        stmt = select(RateLimitWindow.kind, RateLimitWindow.window_start, RateLimitWindow.count).where(
            RateLimitWindow.profile_id == profile.id
        )
        counts = {kind: 0 for kind in WindowKind}
        for kind_value, start, count in (await session.execute(stmt)).all():
            kind = WindowKind(kind_value)
            if start == starts[kind]:
                counts[kind] = count
        return [WindowUsage(kind, counts[kind], caps[kind], window_end(kind, now)) for kind in WindowKind]

    async def acquire(self, session: AsyncSession, profile: AutomationProfile, now: datetime) -> list[WindowUsage]:
        """Count one submission attempt against every window, or raise :class:`RateLimitExceeded`.

        Nothing is committed here; the caller commits together with the state
        change the attempt belongs to.
        """

        caps = profile_caps(profile)
        async with self._lock:
            windows = await self._ensure_windows(session, profile.id, now)
            ids = [row.id for row in windows.values()]

            counted = aliased(RateLimitWindow)
            cap_for_row = case({kind.value: cap for kind, cap in caps.items()}, value=counted.kind)
            blocked = (
                select(func.count())
                .select_from(counted)
                .where(counted.id.in_(ids), counted.count >= cap_for_row)
                .scalar_subquery()
            )
            stmt = (
                update(RateLimitWindow)
                .where(RateLimitWindow.id.in_(ids), blocked == 0)
                .values(count=RateLimitWindow.count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

            refreshed = await session.execute(
                select(RateLimitWindow.kind, RateLimitWindow.count).where(RateLimitWindow.id.in_(ids))
            )
            counts = {WindowKind(kind): count for kind, count in refreshed.all()}

        if result.rowcount == len(ids):
            return [WindowUsage(kind, counts[kind], caps[kind], window_end(kind, now)) for kind in WindowKind]

        # Falls back to the day window if another process changed the rows in between
        exceeded = [kind for kind in WindowKind if counts[kind] >= caps[kind]] or [WindowKind.DAY]
        retry_at = min(window_end(kind, now) for kind in exceeded)
        logger.info(
            "Submission cap reached",
            profile_id=profile.id,
            windows=[kind.value for kind in exceeded],
            retry_at=retry_at.isoformat(),
        )
        raise RateLimitExceeded(retry_at, [kind.value for kind in exceeded])
