"""FastAPI entrypoint wiring services together."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Literal

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import init_models
from app.dependencies import ServiceContainer, db_session, services_provider
from app.errors import (
    InvalidTransition,
    ProfileNotFound,
    QueueItemNotFound,
    RuleValidationError,
    StorageError,
)
from app.models import ProfileStatus, QueueState, as_naive_utc, utcnow
from app.observability import get_logger, setup_logging
from app.schemas import (
    AnalyticsReport,
    CandidateBatch,
    CandidateEvaluation,
    ProcessSummary,
    ProfileConfig,
    ProfileUpdate,
    ProfileView,
    QueueItemView,
    ReviewDecision,
    SubmissionAttemptView,
    WindowUsageView,
)

logger = get_logger(__name__)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RuleValidationError)
    async def _rule_validation(_: Request, exc: RuleValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.errors})

    @app.exception_handler(ProfileNotFound)
    async def _profile_missing(_: Request, exc: ProfileNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": f"Profile {exc} not found"})

    @app.exception_handler(QueueItemNotFound)
    async def _item_missing(_: Request, exc: QueueItemNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": f"Queue item {exc} not found"})

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(_: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "target": exc.target},
        )

    @app.exception_handler(StorageError)
    async def _storage(_: Request, exc: StorageError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable, change not applied"})


def create_app() -> FastAPI:
    app = FastAPI(title="Application Pipeline", version="0.2.0")
    _install_error_handlers(app)
    worker_state: dict[str, object] = {}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - framework hook
        settings = get_settings()
        setup_logging(settings.log_level, settings.log_json)
        await init_models()
        if settings.worker_autostart:
            stop = asyncio.Event()
            workers = services_provider().workers
            worker_state["stop"] = stop
            worker_state["task"] = asyncio.create_task(
                workers.run_forever(settings.worker_poll_interval_seconds, stop)
            )

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - framework hook
        stop = worker_state.get("stop")
        if isinstance(stop, asyncio.Event):
            stop.set()
            await worker_state["task"]

    @app.post("/profiles", response_model=ProfileView, status_code=201)
    async def create_profile(
        payload: ProfileConfig,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> ProfileView:
        profile = await services.profiles.create(session, payload)
        return ProfileView.model_validate(profile)

    @app.get("/profiles/{profile_id}", response_model=ProfileView)
    async def get_profile(
        profile_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> ProfileView:
        return ProfileView.model_validate(await services.profiles.get(session, profile_id))

    @app.patch("/profiles/{profile_id}", response_model=ProfileView)
    async def update_profile(
        profile_id: str,
        payload: ProfileUpdate,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> ProfileView:
        return ProfileView.model_validate(await services.profiles.update(session, profile_id, payload))

    @app.delete("/profiles/{profile_id}", status_code=204)
    async def delete_profile(
        profile_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> None:
        await services.profiles.delete(session, profile_id)

    @app.post("/profiles/{profile_id}/candidates", response_model=list[CandidateEvaluation])
    async def ingest_candidates(
        profile_id: str,
        payload: CandidateBatch,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> list[CandidateEvaluation]:
        profile = await services.profiles.get(session, profile_id)
        results = await services.pipeline.ingest(session, profile, payload.candidates)
        return [
            CandidateEvaluation(
                external_id=result.candidate.external_id,
                eligible=result.evaluation.eligible,
                priority=result.evaluation.priority,
                reasons=list(result.evaluation.reasons),
                queue_item_id=result.item.id if result.item else None,
            )
            for result in results
        ]

    @app.post("/profiles/{profile_id}/queue/process", response_model=ProcessSummary)
    async def process_queue(
        profile_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> ProcessSummary:
        profile = await services.profiles.get(session, profile_id)
        generated = await services.pipeline.generate_pending(session, profile_id=profile.id)
        summary = await services.workers.run_once(profile_id=profile.id)
        return ProcessSummary(
            generated=generated,
            attempted=summary.attempted,
            skipped=summary.skipped,
            reclaimed=summary.reclaimed,
            errors=summary.errors,
            outcomes=summary.outcomes,
        )

    @app.get("/profiles/{profile_id}/limits", response_model=list[WindowUsageView])
    async def profile_limits(
        profile_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> list[WindowUsageView]:
        profile = await services.profiles.get(session, profile_id)
        usage = await services.queue.rate_limiter.usage(session, profile, utcnow())
        return [
            WindowUsageView(
                kind=window.kind.value,
                count=window.count,
                cap=window.cap,
                remaining=window.remaining,
                resets_at=window.resets_at,
            )
            for window in usage
        ]

    @app.get("/profiles/{profile_id}/analytics", response_model=AnalyticsReport)
    async def profile_analytics(
        profile_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> AnalyticsReport:
        profile = await services.profiles.get(session, profile_id, include_deleted=True)
        end = as_naive_utc(end) or utcnow()
        start = as_naive_utc(start) or end - timedelta(days=30)
        return await services.analytics.report(session, profile.id, start, end)

    @app.get("/queue", response_model=list[QueueItemView])
    async def list_queue(
        profile_id: str | None = None,
        state: list[QueueState] | None = Query(default=None),
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> list[QueueItemView]:
        items = await services.queue.list_items(
            session,
            profile_id=profile_id,
            states=state,
            created_from=as_naive_utc(created_from),
            created_to=as_naive_utc(created_to),
        )
        return [QueueItemView.model_validate(item) for item in items]

    @app.get("/queue/{item_id}", response_model=QueueItemView)
    async def get_queue_item(
        item_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> QueueItemView:
        return QueueItemView.model_validate(await services.queue.get(session, item_id))

    @app.post("/queue/{item_id}/review", response_model=QueueItemView)
    async def review_queue_item(
        item_id: str,
        decision: ReviewDecision,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> QueueItemView:
        item = await services.queue.review(session, item_id, approved=decision.approved, notes=decision.notes)
        return QueueItemView.model_validate(item)

    @app.post("/queue/{item_id}/retry", response_model=QueueItemView)
    async def retry_queue_item(
        item_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> QueueItemView:
        return QueueItemView.model_validate(await services.queue.force_retry(session, item_id))

    @app.post("/queue/{item_id}/cancel", response_model=QueueItemView)
    async def cancel_queue_item(
        item_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> QueueItemView:
        return QueueItemView.model_validate(await services.queue.cancel(session, item_id))

    @app.get("/queue/{item_id}/attempts", response_model=list[SubmissionAttemptView])
    async def submission_log(
        item_id: str,
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> list[SubmissionAttemptView]:
        item = await services.queue.get(session, item_id)
        attempts = await services.queue.attempts(session, item.id)
        return [SubmissionAttemptView.model_validate(attempt) for attempt in attempts]

    status_actions = {
        "start": ProfileStatus.ACTIVE,
        "resume": ProfileStatus.ACTIVE,
        "pause": ProfileStatus.PAUSED,
        "stop": ProfileStatus.STOPPED,
    }

    # Registered last so the fixed /profiles/{id}/... routes above take precedence
    @app.post("/profiles/{profile_id}/{action}", response_model=ProfileView)
    async def change_profile_status(
        profile_id: str,
        action: Literal["start", "resume", "pause", "stop"],
        session: AsyncSession = Depends(db_session),
        services: ServiceContainer = Depends(services_provider),
    ) -> ProfileView:
        profile = await services.profiles.change_status(session, profile_id, status_actions[action])
        return ProfileView.model_validate(profile)

    return app


app = create_app()
