"""Application queue state machine and persistence boundary."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.errors import InvalidTransition, QueueItemNotFound, RateLimitExceeded, StorageError
from app.models import (
    AttemptOutcome,
    AutomationProfile,
    JobCandidate,
    ProfileStatus,
    QueueItem,
    QueueState,
    SubmissionAttempt,
    utcnow,
)
from app.observability import get_logger
from services.quality import QualityDecision
from services.rate_limiter import RateLimiter
from services.rules import RuleEvaluation

logger = get_logger(__name__)

URGENCY_BONUS = {"low": 0, "medium": 5, "high": 10}
CANCELLED_REASON = "user-cancelled"

TRANSITIONS: dict[QueueState, frozenset[QueueState]] = {
    QueueState.QUEUED: frozenset({QueueState.GENERATING, QueueState.REJECTED}),
    QueueState.GENERATING: frozenset(
        {QueueState.PENDING_REVIEW, QueueState.READY_TO_SUBMIT, QueueState.REJECTED}
    ),
    QueueState.PENDING_REVIEW: frozenset({QueueState.READY_TO_SUBMIT, QueueState.REJECTED}),
    QueueState.READY_TO_SUBMIT: frozenset({QueueState.SUBMITTING, QueueState.REJECTED}),
    QueueState.SUBMITTING: frozenset(
        {QueueState.SUBMITTED, QueueState.FAILED_TRANSIENT, QueueState.FAILED_PERMANENT}
    ),
    QueueState.FAILED_TRANSIENT: frozenset({QueueState.RETRYING, QueueState.FAILED_PERMANENT}),
    QueueState.RETRYING: frozenset({QueueState.SUBMITTING, QueueState.REJECTED}),
    QueueState.SUBMITTED: frozenset(),
    QueueState.REJECTED: frozenset(),
    QueueState.FAILED_PERMANENT: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)
CANCELLABLE_STATES = frozenset(
    {QueueState.QUEUED, QueueState.PENDING_REVIEW, QueueState.READY_TO_SUBMIT, QueueState.RETRYING}
)
SUBMITTABLE_STATES = frozenset({QueueState.READY_TO_SUBMIT, QueueState.RETRYING})


def can_transition(current: QueueState | str, target: QueueState | str) -> bool:
    return QueueState(target) in TRANSITIONS[QueueState(current)]


async def commit_or_raise(session: AsyncSession) -> None:
    """Commit, turning driver failures into :class:`StorageError` after a rollback."""
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Failed to persist change", error=str(exc))
        raise StorageError(str(exc)) from exc


class ApplicationQueue:
    """Owns every queue item state change.

    Each method writes its change and commits before returning, so a change is
    only in effect once it is stored.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        *,
        lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.rate_limiter = rate_limiter or RateLimiter()
        self.lease_seconds = lease_seconds
        self.clock = clock

    def _apply(self, item: QueueItem, target: QueueState, **changes: Any) -> None:
        current = QueueState(item.state)
        if not can_transition(current, target):
            raise InvalidTransition(item.id, current.value, target.value)
        item.state = target.value
        item.updated_at = self.clock()
        for name, value in changes.items():
            setattr(item, name, value)
        logger.info(
            "Queue item transition",
            queue_item_id=item.id,
            profile_id=item.profile_id,
            from_state=current.value,
            state=target.value,
        )

    async def transition(self, session: AsyncSession, item: QueueItem, target: QueueState, **changes: Any) -> QueueItem:
        self._apply(item, target, **changes)
        await self._commit_item(session, item, target)
        return item

    async def _commit_item(
        self,
        session: AsyncSession,
        item: QueueItem,
        target: QueueState,
        *,
        added: Iterable[Any] = (),
        refresh_stats: bool = False,
    ) -> None:
        """Commit an ORM change to ``item`` together with the ``added`` rows.

        The flush only matches the row version the item was read at, so a
        change written meanwhile by another session surfaces as
        :class:`InvalidTransition` carrying the stored state. ``added`` rows
        join the session only once the item update went through.
        """

        item_id, profile_id = item.id, item.profile_id
        try:
            await session.flush()
            session.add_all(list(added))
            if refresh_stats:
                await self._refresh_profile_stats(session, profile_id)
        except StaleDataError:
            await session.rollback()
            current = await self.get(session, item_id)
            logger.warning(
                "Queue item changed by another writer",
                queue_item_id=item_id,
                state=current.state,
                target=target.value,
            )
            raise InvalidTransition(item_id, current.state, target.value) from None
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("Failed to persist change", error=str(exc))
            raise StorageError(str(exc)) from exc
        await commit_or_raise(session)

    async def _compare_and_set(
        self, session: AsyncSession, item_id: str, expected: Iterable[QueueState], **values: Any
    ) -> bool:
        """Write ``values`` in one statement guarded by the current state.

        Commits and returns True when the row was still in one of ``expected``,
        otherwise rolls back and returns False.
        """

        stmt = (
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.state.in_([state.value for state in expected]))
            .values(**{"updated_at": self.clock(), **values}, version=QueueItem.version + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageError(str(exc)) from exc
        if result.rowcount != 1:
            await session.rollback()
            return False
        await commit_or_raise(session)
        return True

    async def get(self, session: AsyncSession, item_id: str) -> QueueItem:
        item = await session.get(QueueItem, item_id, populate_existing=True)
        if item is None:
            raise QueueItemNotFound(item_id)
        return item

    async def list_items(
        self,
        session: AsyncSession,
        *,
        profile_id: str | None = None,
        states: Iterable[QueueState] | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
    ) -> list[QueueItem]:
        stmt = select(QueueItem).order_by(QueueItem.created_at.desc())
        if profile_id:
            stmt = stmt.where(QueueItem.profile_id == profile_id)
        if states:
            stmt = stmt.where(QueueItem.state.in_([QueueState(state).value for state in states]))
        if created_from:
            stmt = stmt.where(QueueItem.created_at >= created_from)
        if created_to:
            stmt = stmt.where(QueueItem.created_at <= created_to)
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().unique().all())

    async def enqueue(
        self,
        session: AsyncSession,
        profile: AutomationProfile,
        candidate: JobCandidate,
        evaluation: RuleEvaluation,
    ) -> QueueItem | None:
        """Queue an eligible candidate. Ineligible candidates never enter the queue."""

        if not evaluation.eligible:
            logger.info(
                "Candidate filtered out",
                profile_id=profile.id,
                job_candidate_id=candidate.id,
                reasons=list(evaluation.reasons),
            )
            return None

        existing_stmt = select(QueueItem).where(
            QueueItem.profile_id == profile.id, QueueItem.job_candidate_id == candidate.id
        )
        existing = (await session.execute(existing_stmt)).scalar_one_or_none()
        if existing is not None:
            return existing

        now = self.clock()
        item = QueueItem(
            profile=profile,
            candidate=candidate,
            state=QueueState.QUEUED.value,
            priority=evaluation.priority + URGENCY_BONUS.get((candidate.urgency or "medium").lower(), 0),
            match_reasons=list(evaluation.reasons),
            retry_count=0,
            max_retries=profile.max_retries,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(item)
        await commit_or_raise(session)
        logger.info("Queue item created", queue_item_id=item.id, profile_id=profile.id, priority=item.priority)
        return item

    async def begin_generation(self, session: AsyncSession, item: QueueItem) -> QueueItem:
        return await self.transition(session, item, QueueState.GENERATING)

    async def record_generation(
        self, session: AsyncSession, item: QueueItem, content: dict[str, Any], decision: QualityDecision
    ) -> QueueItem:
        """Store the content snapshot and route the item as the quality gate decided."""

        return await self.transition(
            session,
            item,
            decision.state,
            generated_content=content,
            quality_score=decision.scores.quality,
            personalization_score=decision.scores.personalization,
            ats_compatibility=decision.scores.ats_compatibility,
            state_reason=decision.reason,
        )

    async def fail_generation(self, session: AsyncSession, item: QueueItem, reason: str) -> QueueItem:
        return await self.transition(session, item, QueueState.REJECTED, state_reason=reason)

    async def review(self, session: AsyncSession, item_id: str, *, approved: bool, notes: str | None = None) -> QueueItem:
        if approved:
            target = QueueState.READY_TO_SUBMIT
            values = {"review_status": "approved", "review_notes": notes}
        else:
            target = QueueState.REJECTED
            values = {"review_status": "rejected", "review_notes": notes, "state_reason": notes or "rejected in review"}
        applied = await self._compare_and_set(
            session, item_id, {QueueState.PENDING_REVIEW}, state=target.value, **values
        )
        item = await self.get(session, item_id)
        if not applied:
            raise InvalidTransition(item_id, item.state, target.value)
        logger.info("Queue item reviewed", queue_item_id=item_id, profile_id=item.profile_id, state=item.state)
        return item

    async def cancel(self, session: AsyncSession, item_id: str) -> QueueItem:
        applied = await self._compare_and_set(
            session,
            item_id,
            CANCELLABLE_STATES,
            state=QueueState.REJECTED.value,
            state_reason=CANCELLED_REASON,
            next_eligible_at=None,
        )
        item = await self.get(session, item_id)
        if not applied:
            raise InvalidTransition(item_id, item.state, QueueState.REJECTED.value)
        logger.info("Queue item cancelled", queue_item_id=item_id, profile_id=item.profile_id)
        return item

    async def force_retry(self, session: AsyncSession, item_id: str) -> QueueItem:
        """Make a waiting item due immediately. The retry budget is not touched."""

        now = self.clock()
        applied = await self._compare_and_set(
            session, item_id, SUBMITTABLE_STATES, next_eligible_at=now, updated_at=now
        )
        item = await self.get(session, item_id)
        if not applied:
            raise InvalidTransition(item_id, item.state, QueueState.SUBMITTING.value)
        return item

    async def defer(self, session: AsyncSession, item_id: str, retry_at: datetime, reason: str) -> QueueItem:
        """Push a waiting item back to ``retry_at``. Items in any other state are left alone."""

        applied = await self._compare_and_set(
            session, item_id, SUBMITTABLE_STATES, next_eligible_at=retry_at, state_reason=reason
        )
        item = await self.get(session, item_id)
        if applied:
            logger.warning(
                "Queue item deferred",
                queue_item_id=item_id,
                profile_id=item.profile_id,
                retry_at=retry_at.isoformat(),
                reason=reason,
            )
        return item

    async def due_items(
        self, session: AsyncSession, *, profile_id: str | None = None, limit: int = 20
    ) -> list[QueueItem]:
        """Submittable items of active profiles, highest priority first, then oldest first."""

        now = self.clock()
        stmt = (
            select(QueueItem)
            .join(AutomationProfile, AutomationProfile.id == QueueItem.profile_id)
            .where(
                QueueItem.state.in_([state.value for state in SUBMITTABLE_STATES]),
                or_(QueueItem.next_eligible_at.is_(None), QueueItem.next_eligible_at <= now),
                AutomationProfile.deleted_at.is_(None),
                AutomationProfile.status == ProfileStatus.ACTIVE.value,
            )
            .order_by(QueueItem.priority.desc(), QueueItem.created_at.asc())
            .limit(limit)
        )
        if profile_id:
            stmt = stmt.where(QueueItem.profile_id == profile_id)
        result = await session.execute(stmt)
        return list(result.scalars().unique().all())

    async def items_in_state(
        self, session: AsyncSession, state: QueueState, *, profile_id: str | None = None, limit: int = 20
    ) -> list[QueueItem]:
        stmt = select(QueueItem).where(QueueItem.state == state.value)
        if profile_id:
            stmt = stmt.where(QueueItem.profile_id == profile_id)
        stmt = stmt.order_by(QueueItem.priority.desc(), QueueItem.created_at.asc()).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().unique().all())

    async def lease(self, session: AsyncSession, item_id: str, worker_id: str) -> QueueItem | None:
        """Claim an item for submission, counting the attempt against the profile caps.

        The state change and the rate limit increments commit together. Returns
        ``None`` when another worker holds the item, it is not due, or a cap
        deferred it.
        """

        now = self.clock()
        claim = (
            update(QueueItem)
            .where(
                QueueItem.id == item_id,
                QueueItem.state.in_([state.value for state in SUBMITTABLE_STATES]),
                or_(QueueItem.next_eligible_at.is_(None), QueueItem.next_eligible_at <= now),
            )
            .values(
                state=QueueState.SUBMITTING.value,
                lease_owner=worker_id,
                lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                updated_at=now,
                version=QueueItem.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await session.execute(claim)
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageError(str(exc)) from exc
        if result.rowcount != 1:
            await session.rollback()
            return None

        item = await session.get(QueueItem, item_id, populate_existing=True)
        try:
            await self.rate_limiter.acquire(session, item.profile, now)
        except RateLimitExceeded as exc:
            await session.rollback()
            await self.defer(session, item_id, exc.retry_at, str(exc))
            return None
        await commit_or_raise(session)
        logger.info("Queue item leased", queue_item_id=item.id, worker_id=worker_id, attempt=item.attempt_count + 1)
        return item

    async def expired_leases(self, session: AsyncSession) -> list[QueueItem]:
        stmt = select(QueueItem).where(
            QueueItem.state == QueueState.SUBMITTING.value,
            QueueItem.lease_expires_at < self.clock(),
        )
        result = await session.execute(stmt)
        return list(result.scalars().unique().all())

    async def finish_attempt(
        self,
        session: AsyncSession,
        item: QueueItem,
        outcome: AttemptOutcome,
        *,
        retry_at: datetime | None = None,
        reason: str | None = None,
        **attempt_fields: Any,
    ) -> SubmissionAttempt:
        """Append the attempt record and move the leased item to its next state.

        A transient failure goes on to ``retrying`` while the retry budget
        lasts and to ``failed_permanent`` once it is spent.
        """

        now = self.clock()
        item.attempt_count += 1
        attempt = SubmissionAttempt(
            queue_item_id=item.id,
            attempt_number=item.attempt_count,
            timestamp=now,
            outcome=outcome.value,
            **attempt_fields,
        )
        released = {"lease_owner": None, "lease_expires_at": None}

        if outcome is AttemptOutcome.SUCCESS:
            self._apply(item, QueueState.SUBMITTED, submitted_at=now, state_reason=None, **released)
        elif outcome is AttemptOutcome.PERMANENT_FAILURE:
            self._apply(item, QueueState.FAILED_PERMANENT, state_reason=reason, **released)
        else:
            self._apply(item, QueueState.FAILED_TRANSIENT, state_reason=reason, **released)
            if item.retry_count < item.max_retries:
                self._apply(
                    item,
                    QueueState.RETRYING,
                    retry_count=item.retry_count + 1,
                    next_eligible_at=retry_at or now,
                )
            else:
                self._apply(item, QueueState.FAILED_PERMANENT, state_reason=f"retries exhausted: {reason}")

        final = QueueState(item.state)
        await self._commit_item(session, item, final, added=[attempt], refresh_stats=final in TERMINAL_STATES)
        return attempt

    async def _refresh_profile_stats(self, session: AsyncSession, profile_id: str) -> None:
        await session.flush()
        stmt = (
            select(QueueItem.state, func.count())
            .where(
                QueueItem.profile_id == profile_id,
                QueueItem.state.in_([QueueState.SUBMITTED.value, QueueState.FAILED_PERMANENT.value]),
            )
            .group_by(QueueItem.state)
        )
        counts = dict((await session.execute(stmt)).all())
        submitted = counts.get(QueueState.SUBMITTED.value, 0)
        finished = submitted + counts.get(QueueState.FAILED_PERMANENT.value, 0)
        profile = await session.get(AutomationProfile, profile_id)
        if profile is not None:
            profile.total_applications = submitted
            profile.success_rate = round(submitted / finished, 4) if finished else 0.0

    async def attempts(self, session: AsyncSession, item_id: str) -> list[SubmissionAttempt]:
        stmt = (
            select(SubmissionAttempt)
            .where(SubmissionAttempt.queue_item_id == item_id)
            .order_by(SubmissionAttempt.attempt_number)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
