"""Submission collaborators and the executor that drives leased queue items."""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.errors import InvalidTransition, SubmissionPermanentError, SubmissionTransientError
from app.models import AttemptOutcome, QueueItem, QueueState, SubmissionAttempt, utcnow
from app.observability import get_logger
from services.queue import ApplicationQueue

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


@dataclass
class SubmissionRequest:
    queue_item_id: str
    job_url: str
    position: str
    company: str
    cover_letter: str = ""
    custom_answers: dict[str, Any] = field(default_factory=dict)
    resume_customization: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: QueueItem) -> "SubmissionRequest":
        content = item.generated_content or {}
        candidate = item.candidate
        return cls(
            queue_item_id=item.id,
            job_url=candidate.listing_url or "",
            position=candidate.title,
            company=candidate.company,
            cover_letter=content.get("cover_letter") or "",
            custom_answers=dict(content.get("custom_answers") or {}),
            resume_customization=dict(content.get("resume_customization") or {}),
        )

    def validate(self) -> tuple[list[str], list[str]]:
        """Return ``(errors, warnings)`` for the payload."""
        errors: list[str] = []
        warnings: list[str] = []
        if not self.position:
            errors.append("Position is required")
        if not self.company:
            errors.append("Company is required")
        if not self.job_url:
            errors.append("Application URL is required")
        if not self.cover_letter:
            warnings.append("Cover letter is recommended")
        return errors, warnings


@dataclass
class SubmissionResponse:
    """What a collaborator observed while submitting."""

    http_status: int | None = 200
    captcha_encountered: bool = False
    human_intervention_required: bool = False
    confirmation: dict[str, Any] | None = None
    error: str | None = None


class SubmissionCollaborator(ABC):
    """Interface for delivering an application to the employer's system."""

    collaborator_name: str = "generic"

    @abstractmethod
    async def submit(self, request: SubmissionRequest) -> SubmissionResponse:
        """Submit ``request``. Transport problems may be raised as :class:`SubmissionTransientError`."""

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"{self.__class__.__name__}(collaborator_name={self.collaborator_name!r})"


class PlaywrightSubmitter(SubmissionCollaborator):
    """Drive Playwright to fill and submit application forms."""

    collaborator_name = "playwright"

    CAPTCHA_SELECTORS = (
        "iframe[src*='recaptcha']",
        "iframe[src*='hcaptcha']",
        "input[name='captcha']",
        "div.g-recaptcha",
    )
    LOGIN_WALL_SELECTORS = ("input[type='password']",)

    def __init__(self, headless: bool = True) -> None:
        self.headless = headless

    async def submit(self, request: SubmissionRequest) -> SubmissionResponse:
        try:
            async with async_playwright() as playwright:
                browser = await playwright.chromium.launch(headless=self.headless)
                try:
                    context = await browser.new_context()
                    page = await context.new_page()
                    navigation = await page.goto(request.job_url)
                    status = navigation.status if navigation is not None else None
                    if status is not None and status >= 400:
                        return SubmissionResponse(http_status=status, error=f"Listing returned {status}")

                    if await self._page_matches(page, self.LOGIN_WALL_SELECTORS):
                        return SubmissionResponse(
                            http_status=status, human_intervention_required=True, error="Login required"
                        )

                    await self._fill_form(page, self._answers(request))
                    await page.click("text=Submit")

                    if await self._page_matches(page, self.CAPTCHA_SELECTORS):
                        return SubmissionResponse(http_status=status, captcha_encountered=True, error="Captcha shown")
                    return SubmissionResponse(http_status=status or 200, confirmation={"url": page.url})
                finally:
                    await browser.close()
        except PlaywrightError as exc:
            raise SubmissionTransientError(f"Playwright error: {exc}") from exc

    @staticmethod
    def _answers(request: SubmissionRequest) -> dict[str, Any]:
        answers = dict(request.custom_answers)
        if request.cover_letter:
            answers.setdefault("cover_letter", request.cover_letter)
        return answers

    async def _fill_form(self, page, answers: dict[str, Any]) -> None:  # type: ignore[override]
        for name, value in answers.items():
            selector = f"[name=\"{name}\"]"
            if await page.query_selector(selector) is None:
                continue
            if isinstance(value, bool):
                if value:
                    await page.check(selector)
                else:
                    await page.uncheck(selector)
            else:
                await page.fill(selector, str(value))

    @staticmethod
    async def _page_matches(page, selectors: tuple[str, ...]) -> bool:  # type: ignore[override]
        for selector in selectors:
            element = await page.query_selector(selector)
            if element is not None:
                return True
        return False


class WebhookSubmitter(SubmissionCollaborator):
    """Hand the application to a workflow webhook (Zapier, Make, n8n)."""

    collaborator_name = "webhook"

    def __init__(self, url: str, token: str | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.token = token
        self._client = client

    async def submit(self, request: SubmissionRequest) -> SubmissionResponse:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = {"action": "submit_application", "data": asdict(request)}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=body, headers=headers)
        except httpx.TransportError as exc:
            raise SubmissionTransientError(f"Webhook transport error: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"body": payload}
        return SubmissionResponse(
            http_status=response.status_code,
            captcha_encountered=bool(payload.get("captchaEncountered")),
            human_intervention_required=bool(payload.get("humanInterventionRequired")),
            confirmation=payload or None,
            error=None if response.is_success else f"Webhook returned {response.status_code}",
        )


def build_submitter(settings: Settings) -> SubmissionCollaborator:
    if settings.submission_backend == "webhook":
        if not settings.webhook_url:
            raise ValueError("webhook_url must be set for the webhook submission backend")
        return WebhookSubmitter(settings.webhook_url, settings.webhook_token)
    return PlaywrightSubmitter(headless=settings.playwright_headless)


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_s: float = 30.0
    max_delay_s: float = 3600.0

    def delay(self, retry_count: int) -> float:
        """Exponential backoff: ``min(base * 2**retry_count, max)``."""
        return min(self.base_delay_s * (2**retry_count), self.max_delay_s)


def classify(response: SubmissionResponse) -> None:
    """Raise for anything but a clean success."""

    if response.captcha_encountered or response.human_intervention_required:
        raise SubmissionPermanentError(
            response.error or "Human action required",
            response.http_status,
            captcha_encountered=response.captcha_encountered,
            human_intervention_required=response.human_intervention_required,
        )
    status = response.http_status
    if status is None or 200 <= status < 300:
        return
    if status >= 500 or status in TRANSIENT_STATUS_CODES:
        raise SubmissionTransientError(response.error or f"Server returned {status}", status)
    raise SubmissionPermanentError(response.error or f"Submission refused with {status}", status)


class SubmissionExecutor:
    """Run one submission attempt for a leased item and record its outcome."""

    def __init__(
        self,
        queue: ApplicationQueue,
        collaborator: SubmissionCollaborator,
        *,
        timeout_s: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.collaborator = collaborator
        self.timeout_s = timeout_s
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    async def execute(self, session: AsyncSession, item: QueueItem) -> SubmissionAttempt:
        request = SubmissionRequest.from_item(item)
        response: SubmissionResponse | None = None
        started = time.perf_counter()
        try:
            errors, warnings = request.validate()
            if errors:
                raise SubmissionPermanentError("Invalid application data: " + "; ".join(errors))
            if warnings:
                logger.info("Submission payload warnings", queue_item_id=item.id, warnings=warnings)
            response = await asyncio.wait_for(self.collaborator.submit(request), timeout=self.timeout_s)
            classify(response)
        except asyncio.TimeoutError:
            failure = SubmissionTransientError(f"Submission timed out after {self.timeout_s:g}s")
            return await self._record_transient(session, item, failure, response, started)
        except SubmissionTransientError as exc:
            return await self._record_transient(session, item, exc, response, started)
        except SubmissionPermanentError as exc:
            return await self._record_permanent(session, item, exc, response, started)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected submission failure", queue_item_id=item.id)
            failure = SubmissionTransientError(f"{type(exc).__name__}: {exc}")
            return await self._record_transient(session, item, failure, response, started)

        attempt = await self.queue.finish_attempt(
            session,
            item,
            AttemptOutcome.SUCCESS,
            http_status=response.http_status,
            duration_ms=self._elapsed_ms(started),
            response=response.confirmation,
        )
        logger.info("Application submitted", queue_item_id=item.id, attempt=attempt.attempt_number)
        return attempt

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    async def _record_transient(
        self,
        session: AsyncSession,
        item: QueueItem,
        exc: SubmissionTransientError,
        response: SubmissionResponse | None,
        started: float,
    ) -> SubmissionAttempt:
        retry_at = self.clock() + timedelta(seconds=self.retry_policy.delay(item.retry_count))
        attempt = await self.queue.finish_attempt(
            session,
            item,
            AttemptOutcome.TRANSIENT_FAILURE,
            retry_at=retry_at,
            reason=exc.detail,
            http_status=exc.http_status,
            error_detail=exc.detail,
            duration_ms=self._elapsed_ms(started),
            response=response.confirmation if response else None,
        )
        logger.warning(
            "Submission attempt failed",
            queue_item_id=item.id,
            attempt=attempt.attempt_number,
            state=item.state,
            retry_count=item.retry_count,
            retry_at=retry_at.isoformat(),
            error=exc.detail,
        )
        return attempt

    async def _record_permanent(
        self,
        session: AsyncSession,
        item: QueueItem,
        exc: SubmissionPermanentError,
        response: SubmissionResponse | None,
        started: float,
    ) -> SubmissionAttempt:
        if exc.captcha_encountered or exc.human_intervention_required:
            item.profile.needs_attention = True
            item.profile.attention_reason = f"{item.candidate.company}: {exc.detail}"
        attempt = await self.queue.finish_attempt(
            session,
            item,
            AttemptOutcome.PERMANENT_FAILURE,
            reason=exc.detail,
            http_status=exc.http_status,
            error_detail=exc.detail,
            duration_ms=self._elapsed_ms(started),
            captcha_encountered=exc.captcha_encountered,
            human_intervention_required=exc.human_intervention_required,
            response=response.confirmation if response else None,
        )
        logger.warning(
            "Submission needs a human",
            queue_item_id=item.id,
            profile_id=item.profile_id,
            attempt=attempt.attempt_number,
            captcha=exc.captcha_encountered,
            error=exc.detail,
        )
        return attempt

    async def reclaim_expired_leases(self, session: AsyncSession) -> int:
        """Close out attempts whose worker never reported back so the items can be picked up again."""

        reclaimed = 0
        expired_ids = [item.id for item in await self.queue.expired_leases(session)]
        for item_id in expired_ids:
            item = await self.queue.get(session, item_id)
            if QueueState(item.state) is not QueueState.SUBMITTING:
                continue
            detail = f"Lease held by {item.lease_owner} expired"
            retry_at = self.clock() + timedelta(seconds=self.retry_policy.delay(item.retry_count))
            try:
                await self.queue.finish_attempt(
                    session,
                    item,
                    AttemptOutcome.TRANSIENT_FAILURE,
                    retry_at=retry_at,
                    reason=detail,
                    error_detail=detail,
                )
            except InvalidTransition as exc:
                logger.info("Expired lease already closed", queue_item_id=item_id, state=exc.current)
                continue
            logger.warning("Reclaimed expired lease", queue_item_id=item_id, state=item.state)
            reclaimed += 1
        return reclaimed
