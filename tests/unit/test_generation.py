from datetime import datetime

import pytest

from app.errors import ContentGenerationError
from app.models import AutomationProfile, JobCandidate
from services.generation import (
    CachedContentGenerator,
    ContentGenerator,
    InMemoryContentCache,
    ResilientContentGenerator,
    TemplateContentGenerator,
    build_content_generator,
)


class FakeMonotonic:
    def __init__(self):
        self.value = 100.0

    def __call__(self):
        return self.value


class BrokenGenerator(ContentGenerator):
    generator_name = "broken"

    async def generate(self, candidate, profile):
        raise RuntimeError("model unavailable")


class CountingGenerator(TemplateContentGenerator):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def generate(self, candidate, profile):
        self.calls += 1
        return await super().generate(candidate, profile)


@pytest.fixture
def profile():
    return AutomationProfile(
        id="profile-1",
        profile_name="Ada Lovelace",
        rules={"cover_letter_templates": {"acme": "Hello {company}, I want the {job_title} job. {full_name}"}},
        updated_at=datetime(2026, 3, 1),
    )


@pytest.fixture
def candidate():
    return JobCandidate(
        id="candidate-1",
        title="Backend Engineer",
        company="Acme",
        skills=["python", "sql"],
        requirements=["APIs"],
        location="Remote",
    )


@pytest.mark.asyncio
async def test_template_generator_uses_company_template(profile, candidate):
    content = await TemplateContentGenerator().generate(candidate, profile)

    assert content.cover_letter == "Hello Acme, I want the Backend Engineer job. Ada Lovelace"
    assert (content.quality_score, content.personalization_score, content.ats_compatibility) == (0.82, 0.78, 0.88)
    assert content.generator == "template"


@pytest.mark.asyncio
async def test_template_generator_keeps_unknown_placeholders(profile, candidate):
    profile.rules = {"cover_letter_templates": {"default": "Dear {hiring_manager} at {company}"}}
    candidate.company = "Globex"

    content = await TemplateContentGenerator().generate(candidate, profile)

    assert content.cover_letter == "Dear {hiring_manager} at Globex"


@pytest.mark.asyncio
async def test_template_generator_reports_unrenderable_template(profile, candidate):
    profile.rules = {"cover_letter_templates": {"default": "Salary expectation: {negotiable"}}

    with pytest.raises(ContentGenerationError) as excinfo:
        await TemplateContentGenerator().generate(candidate, profile)

    assert "could not be rendered" in str(excinfo.value)


@pytest.mark.asyncio
async def test_resilient_generator_falls_back(profile, candidate):
    content = await ResilientContentGenerator(BrokenGenerator()).generate(candidate, profile)

    assert content.generator == "template"


@pytest.mark.asyncio
async def test_resilient_generator_raises_when_fallback_fails(profile, candidate):
    generator = ResilientContentGenerator(BrokenGenerator(), fallback=BrokenGenerator())

    with pytest.raises(ContentGenerationError):
        await generator.generate(candidate, profile)


def test_cache_entries_expire():
    clock = FakeMonotonic()
    cache = InMemoryContentCache(clock=clock)
    cache.set_with_ttl("key", object(), ttl_s=60)

    clock.value += 59
    assert cache.get("key") is not None
    clock.value += 1
    assert cache.get("key") is None
    assert len(cache) == 0


def test_cache_write_sweeps_expired_entries():
    clock = FakeMonotonic()
    cache = InMemoryContentCache(clock=clock)
    for n in range(3):
        cache.set_with_ttl(f"stale-{n}", object(), ttl_s=60)

    clock.value += 61
    cache.set_with_ttl("fresh", object(), ttl_s=60)

    assert len(cache) == 1
    assert cache.get("fresh") is not None


@pytest.mark.asyncio
async def test_cached_generator_reuses_until_profile_changes(profile, candidate):
    inner = CountingGenerator()
    generator = CachedContentGenerator(inner, InMemoryContentCache(), ttl_s=3600)

    first = await generator.generate(candidate, profile)
    second = await generator.generate(candidate, profile)
    profile.updated_at = datetime(2026, 3, 2)
    await generator.generate(candidate, profile)

    assert first is second
    assert inner.calls == 2


def test_zero_ttl_disables_caching():
    assert isinstance(build_content_generator(cache_ttl_s=0), TemplateContentGenerator)
    assert isinstance(build_content_generator(BrokenGenerator(), cache_ttl_s=60), CachedContentGenerator)
