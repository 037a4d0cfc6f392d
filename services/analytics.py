"""Read-only submission analytics for a profile."""
from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AttemptOutcome, QueueItem, QueueState, SubmissionAttempt
from app.schemas import AnalyticsReport

EXHAUSTED_PREFIX = "retries exhausted"


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 4) if values else None


class AnalyticsAggregator:
    """Derive success rate, score averages and throughput. Never writes."""

    async def report(
        self, session: AsyncSession, profile_id: str, start: datetime, end: datetime
    ) -> AnalyticsReport:
        items_stmt = select(QueueItem).where(
            QueueItem.profile_id == profile_id,
            QueueItem.created_at >= start,
            QueueItem.created_at <= end,
        )
        items = list((await session.execute(items_stmt)).scalars().unique().all())

        attempts_stmt = (
            select(SubmissionAttempt)
            .join(QueueItem, QueueItem.id == SubmissionAttempt.queue_item_id)
            .where(
                QueueItem.profile_id == profile_id,
                SubmissionAttempt.timestamp >= start,
                SubmissionAttempt.timestamp <= end,
            )
        )
        attempts = list((await session.execute(attempts_stmt)).scalars().all())

        states = Counter(item.state for item in items)
        submitted = states.get(QueueState.SUBMITTED.value, 0)
        failed = [item for item in items if item.state == QueueState.FAILED_PERMANENT.value]
        exhausted = sum(1 for item in failed if (item.state_reason or "").startswith(EXHAUSTED_PREFIX))
        finished = submitted + len(failed)

        generated = [item for item in items if item.quality_score is not None]
        days = max(1, math.ceil((end - start) / timedelta(days=1)))
        submitted_in_range = sum(
            1 for attempt in attempts if attempt.outcome == AttemptOutcome.SUCCESS.value
        )
        errors = Counter(attempt.error_detail for attempt in attempts if attempt.error_detail)

        return AnalyticsReport(
            profile_id=profile_id,
            start=start,
            end=end,
            total_items=len(items),
            state_counts=dict(states),
            submitted=submitted,
            failed_permanent=len(failed) - exhausted,
            retries_exhausted=exhausted,
            success_rate=round(submitted / finished, 4) if finished else None,
            average_quality_score=_mean([item.quality_score for item in generated]),
            average_personalization_score=_mean([item.personalization_score for item in generated]),
            average_ats_compatibility=_mean([item.ats_compatibility for item in generated]),
            throughput_per_day=round(submitted_in_range / days, 4),
            total_attempts=len(attempts),
            average_attempt_duration_ms=_mean([float(attempt.duration_ms) for attempt in attempts]),
            most_common_errors=[detail for detail, _ in errors.most_common(3)],
        )
