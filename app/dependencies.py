"""FastAPI dependency helpers."""
from collections.abc import AsyncIterator
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import AsyncSessionLocal, get_session
from services import (
    AnalyticsAggregator,
    ApplicationQueue,
    AutomationPipeline,
    ProfileService,
    RateLimiter,
    RetryPolicy,
    SubmissionExecutor,
    SubmissionWorkerPool,
    build_content_generator,
    build_submitter,
)


@dataclass
class ServiceContainer:
    queue: ApplicationQueue
    pipeline: AutomationPipeline
    executor: SubmissionExecutor
    workers: SubmissionWorkerPool
    profiles: ProfileService
    analytics: AnalyticsAggregator


def build_services(settings: Settings, session_factory=AsyncSessionLocal) -> ServiceContainer:
    queue = ApplicationQueue(RateLimiter(), lease_seconds=settings.lease_seconds)
    executor = SubmissionExecutor(
        queue,
        build_submitter(settings),
        timeout_s=settings.submission_timeout_seconds,
        retry_policy=RetryPolicy(settings.retry_base_delay_seconds, settings.retry_max_delay_seconds),
    )
    pipeline = AutomationPipeline(
        queue,
        build_content_generator(cache_ttl_s=settings.content_cache_ttl_seconds),
        stale_generation_s=settings.lease_seconds,
    )
    workers = SubmissionWorkerPool(
        session_factory,
        queue,
        executor,
        concurrency=settings.worker_concurrency,
        batch_size=settings.worker_batch_size,
    )
    return ServiceContainer(
        queue=queue,
        pipeline=pipeline,
        executor=executor,
        workers=workers,
        profiles=ProfileService(settings),
        analytics=AnalyticsAggregator(),
    )


async def db_session() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


def settings_provider() -> Settings:
    return get_settings()


@lru_cache
def services_provider() -> ServiceContainer:
    return build_services(get_settings())
