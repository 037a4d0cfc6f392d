"""Ingestion, content generation and the submission worker pool."""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import ContentGenerationError, InvalidTransition
from app.models import AutomationProfile, JobCandidate, QueueItem, QueueState
from app.observability import get_logger
from app.schemas import JobCandidateIn
from services.generation import ContentGenerator
from services.quality import QualityGate, QualityThresholds
from services.queue import ApplicationQueue, commit_or_raise
from services.rules import RuleEvaluation, RuleSet, evaluate
from services.submission import SubmissionExecutor

logger = get_logger(__name__)


@dataclass
class IngestResult:
    candidate: JobCandidate
    evaluation: RuleEvaluation
    item: QueueItem | None


@dataclass
class PassSummary:
    generated: int = 0
    attempted: int = 0
    skipped: int = 0
    reclaimed: int = 0
    errors: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def record(self, state: str) -> None:
        self.outcomes[state] = self.outcomes.get(state, 0) + 1


class AutomationPipeline:
    """Rule filtering, enqueueing and the generation/quality step for queued items."""

    def __init__(
        self,
        queue: ApplicationQueue,
        generator: ContentGenerator,
        gate: QualityGate | None = None,
        *,
        stale_generation_s: float = 300.0,
    ) -> None:
        self.queue = queue
        self.generator = generator
        self.gate = gate or QualityGate()
        self.stale_generation_s = stale_generation_s

    async def _get_or_create_candidate(self, session: AsyncSession, data: JobCandidateIn) -> JobCandidate:
        stmt = select(JobCandidate).where(JobCandidate.external_id == data.external_id)
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            return existing
        candidate = JobCandidate(**data.model_dump())
        session.add(candidate)
        await commit_or_raise(session)
        return candidate

    async def ingest(
        self, session: AsyncSession, profile: AutomationProfile, candidates: Iterable[JobCandidateIn]
    ) -> list[IngestResult]:
        """Evaluate candidates against the profile rules and queue the eligible ones."""

        rules = RuleSet.from_dict(profile.rules)
        results: list[IngestResult] = []
        for data in candidates:
            candidate = await self._get_or_create_candidate(session, data)
            evaluation = evaluate(candidate, rules)
            item = await self.queue.enqueue(session, profile, candidate, evaluation)
            results.append(IngestResult(candidate=candidate, evaluation=evaluation, item=item))
        logger.info(
            "Candidates ingested",
            profile_id=profile.id,
            received=len(results),
            queued=sum(1 for result in results if result.item is not None),
        )
        return results

    async def generate_item(self, session: AsyncSession, item: QueueItem) -> QueueItem:
        if QueueState(item.state) is QueueState.QUEUED:
            await self.queue.begin_generation(session, item)
        try:
            content = await self.generator.generate(item.candidate, item.profile)
        except ContentGenerationError as exc:
            logger.warning("Content generation failed", queue_item_id=item.id, error=str(exc))
            return await self.queue.fail_generation(session, item, str(exc))
        decision = self.gate.evaluate(content.scores, QualityThresholds.from_profile(item.profile))
        return await self.queue.record_generation(session, item, content.snapshot(), decision)

    async def generate_pending(
        self, session: AsyncSession, *, profile_id: str | None = None, limit: int = 20
    ) -> int:
        """Generate content for queued items, and for generation left unfinished by a crash."""

        queued = await self.queue.items_in_state(session, QueueState.QUEUED, profile_id=profile_id, limit=limit)
        item_ids = [item.id for item in queued if item.profile.is_schedulable]
        stale_before = self.queue.clock() - timedelta(seconds=self.stale_generation_s)
        for item in await self.queue.items_in_state(
            session, QueueState.GENERATING, profile_id=profile_id, limit=limit
        ):
            if item.updated_at < stale_before and item.profile.is_schedulable:
                item_ids.append(item.id)

        processed = 0
        for item_id in item_ids:
            # A failed item rolls the session back, so each item is read fresh
            item = await self.queue.get(session, item_id)
            if QueueState(item.state) not in (QueueState.QUEUED, QueueState.GENERATING):
                continue
            try:
                await self.generate_item(session, item)
            except InvalidTransition as exc:
                logger.warning(
                    "Queue item changed during generation",
                    queue_item_id=item_id,
                    state=exc.current,
                    target=exc.target,
                )
                continue
            processed += 1
        return processed


class SubmissionWorkerPool:
    """Bounded pool of workers pulling due items in priority order, one lease per item."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: ApplicationQueue,
        executor: SubmissionExecutor,
        *,
        concurrency: int = 3,
        batch_size: int = 20,
        name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.executor = executor
        self.concurrency = max(1, concurrency)
        self.batch_size = batch_size
        self.name = name or f"worker-{uuid.uuid4().hex[:8]}"

    async def _process(self, item_id: str, slot: int, summary: PassSummary) -> None:
        worker_id = f"{self.name}:{slot}"
        async with self.session_factory() as session:
            item = await self.queue.lease(session, item_id, worker_id)
            if item is None:
                summary.skipped += 1
                return
            summary.attempted += 1
            await self.executor.execute(session, item)
            summary.record(item.state)

    async def run_once(self, *, profile_id: str | None = None) -> PassSummary:
        summary = PassSummary()
        async with self.session_factory() as session:
            summary.reclaimed = await self.executor.reclaim_expired_leases(session)
            due = await self.queue.due_items(session, profile_id=profile_id, limit=self.batch_size)
            item_ids = [item.id for item in due]

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(slot: int, item_id: str) -> None:
            async with semaphore:
                await self._process(item_id, slot % self.concurrency, summary)

        results = await asyncio.gather(
            *(run(slot, item_id) for slot, item_id in enumerate(item_ids)), return_exceptions=True
        )
        for item_id, result in zip(item_ids, results):
            if isinstance(result, Exception):
                summary.errors += 1
                logger.error(
                    "Submission worker failed",
                    worker=self.name,
                    queue_item_id=item_id,
                    error=f"{type(result).__name__}: {result}",
                )
            elif isinstance(result, BaseException):
                raise result
        if item_ids:
            logger.info(
                "Submission pass finished",
                worker=self.name,
                due=len(item_ids),
                attempted=summary.attempted,
                skipped=summary.skipped,
                errors=summary.errors,
                outcomes=summary.outcomes,
            )
        return summary

    async def run_forever(self, poll_interval_s: float, stop: asyncio.Event) -> None:
        logger.info("Submission worker pool started", worker=self.name, concurrency=self.concurrency)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Submission pass failed", worker=self.name)
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval_s)
            except asyncio.TimeoutError:
                continue
        logger.info("Submission worker pool stopped", worker=self.name)
