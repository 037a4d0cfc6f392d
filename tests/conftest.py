import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import Settings
from app.database import init_models
from app.models import JobCandidate
from app.schemas import ProfileConfig
from services.generation import ContentGenerator, GeneratedContent
from services.pipeline import AutomationPipeline
from services.profiles import ProfileService
from services.queue import ApplicationQueue
from services.rate_limiter import RateLimiter
from services.rules import RuleSet, evaluate
from services.submission import RetryPolicy, SubmissionCollaborator, SubmissionExecutor, SubmissionResponse

# A Tuesday, so day/week/month windows all start on different dates
START = datetime(2026, 3, 10, 9, 0, 0)

HANG = object()


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class ScriptedSubmitter(SubmissionCollaborator):
    """Plays back one step per call: a response, an exception, or HANG to sleep past the timeout."""

    collaborator_name = "scripted"

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    async def submit(self, request):
        self.requests.append(request)
        step = self.steps.pop(0) if self.steps else SubmissionResponse()
        if step is HANG:
            await asyncio.sleep(10)
        if isinstance(step, Exception):
            raise step
        return step


class FixedContentGenerator(ContentGenerator):
    generator_name = "fixed"

    def __init__(self, quality=0.95, personalization=0.95, ats=0.95):
        self.scores = (quality, personalization, ats)
        self.calls = 0

    async def generate(self, candidate, profile):
        self.calls += 1
        quality, personalization, ats = self.scores
        return GeneratedContent(
            cover_letter=f"Cover letter for {candidate.title} at {candidate.company}",
            quality_score=quality,
            personalization_score=personalization,
            ats_compatibility=ats,
            generator=self.generator_name,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        data_directory=tmp_path,
        log_json=False,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def profiles(settings, clock):
    return ProfileService(settings, clock)


@pytest.fixture
def make_profile(session, profiles):
    async def _make(**options):
        options.setdefault("owner_id", "user-123")
        return await profiles.create(session, ProfileConfig(**options))

    return _make


@pytest.fixture
def make_candidate(session):
    counter = {"n": 0}

    async def _make(**fields):
        counter["n"] += 1
        values = {
            "external_id": f"job-{counter['n']}",
            "title": "Backend Engineer",
            "company": "Acme",
            "description": "Build Python services",
            "requirements": ["3+ years Python"],
            "skills": ["python", "postgres"],
            "location": "Remote",
            "urgency": "medium",
            "listing_url": f"https://jobs.example.com/{counter['n']}",
        }
        values.update(fields)
        candidate = JobCandidate(**values)
        session.add(candidate)
        await session.commit()
        return candidate

    return _make


@pytest.fixture
def queue(clock):
    return ApplicationQueue(RateLimiter(), lease_seconds=300, clock=clock)


@pytest.fixture
def generator():
    return FixedContentGenerator()


@pytest.fixture
def pipeline(queue, generator):
    return AutomationPipeline(queue, generator)


@pytest.fixture
def make_item(session, pipeline, make_candidate):
    """Queue a fresh candidate for ``profile``; with ``generate`` it also runs content generation."""

    async def _make(profile, *, generate=True, **candidate_fields):
        candidate = await make_candidate(**candidate_fields)
        evaluation = evaluate(candidate, RuleSet.from_dict(profile.rules))
        item = await pipeline.queue.enqueue(session, profile, candidate, evaluation)
        if generate:
            item = await pipeline.generate_item(session, item)
        return item

    return _make


@pytest.fixture
def hang():
    return HANG


@pytest.fixture
def make_executor(queue, clock):
    def _make(*steps, timeout_s=0.05):
        submitter = ScriptedSubmitter(*steps)
        executor = SubmissionExecutor(
            queue,
            submitter,
            timeout_s=timeout_s,
            retry_policy=RetryPolicy(base_delay_s=30, max_delay_s=3600),
            clock=clock,
        )
        return executor, submitter

    return _make
