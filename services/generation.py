"""Content generation contract, template fallback and result caching."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from app.errors import ContentGenerationError
from app.models import AutomationProfile, JobCandidate
from app.observability import get_logger
from services.quality import QualityScores

logger = get_logger(__name__)


@dataclass
class GeneratedContent:
    """Draft application content with its three quality scores."""

    cover_letter: str
    quality_score: float
    personalization_score: float
    ats_compatibility: float
    resume_customization: dict[str, Any] = field(default_factory=dict)
    custom_answers: dict[str, Any] = field(default_factory=dict)
    improvement_suggestions: list[str] = field(default_factory=list)
    generator: str = "unknown"

    @property
    def scores(self) -> QualityScores:
        return QualityScores(self.quality_score, self.personalization_score, self.ats_compatibility)

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


class ContentGenerator(ABC):
    """Interface for producing tailored application content."""

    generator_name: str = "generic"

    @abstractmethod
    async def generate(self, candidate: JobCandidate, profile: AutomationProfile) -> GeneratedContent:
        """Return content and scores for applying to ``candidate`` under ``profile``."""

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"{self.__class__.__name__}(generator_name={self.generator_name!r})"


class _TemplateFields(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class TemplateContentGenerator(ContentGenerator):
    """Canned content used when no model-backed generator is available."""

    generator_name = "template"

    DEFAULT_TEMPLATE = (
        "Dear Hiring Manager,\n\n"
        "I am writing to express my strong interest in the {job_title} position at {company}. "
        "My experience aligns well with your requirements, particularly in {skills}.\n\n"
        "I would welcome the chance to discuss how I can contribute to {company}'s continued success.\n\n"
        "Sincerely,\n{full_name}"
    )

    def __init__(self, scores: QualityScores | None = None) -> None:
        self.scores = scores or QualityScores(quality=0.82, personalization=0.78, ats_compatibility=0.88)

    def _template_for(self, candidate: JobCandidate, profile: AutomationProfile) -> str:
        templates = (profile.rules or {}).get("cover_letter_templates") or {}
        return templates.get(candidate.company.lower()) or templates.get("default") or self.DEFAULT_TEMPLATE

    async def generate(self, candidate: JobCandidate, profile: AutomationProfile) -> GeneratedContent:
        rules = profile.rules or {}
        skills = list(candidate.skills or [])[:3] or ["the skills this role needs"]
        fields = _TemplateFields(
            job_title=candidate.title,
            company=candidate.company,
            location=candidate.location or "",
            skills=", ".join(skills),
            full_name=profile.profile_name,
        )
        try:
            cover_letter = self._template_for(candidate, profile).format_map(fields)
        except (ValueError, KeyError, IndexError, AttributeError) as exc:
            raise ContentGenerationError(f"Cover letter template could not be rendered: {exc}") from exc
        return GeneratedContent(
            cover_letter=cover_letter,
            quality_score=self.scores.quality,
            personalization_score=self.scores.personalization,
            ats_compatibility=self.scores.ats_compatibility,
            resume_customization={
                "highlight_skills": list(candidate.skills or [])[:5],
                "emphasize_experience": list(candidate.requirements or [])[:3],
                "custom_objective": f"Seeking {candidate.title} role at {candidate.company}",
                **dict(rules.get("resume_highlights") or {}),
            },
            custom_answers=dict(rules.get("custom_answers") or {}),
            improvement_suggestions=[
                "Add specific examples of relevant experience",
                "Include quantifiable achievements",
            ],
            generator=self.generator_name,
        )


class ResilientContentGenerator(ContentGenerator):
    """Use ``primary`` and fall back to ``fallback`` when it raises."""

    generator_name = "resilient"

    def __init__(self, primary: ContentGenerator, fallback: ContentGenerator | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or TemplateContentGenerator()

    async def generate(self, candidate: JobCandidate, profile: AutomationProfile) -> GeneratedContent:
        try:
            return await self.primary.generate(candidate, profile)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning(
                "Primary content generator failed, using fallback",
                generator=self.primary.generator_name,
                job_candidate_id=candidate.id,
                error=str(exc),
            )
        try:
            return await self.fallback.generate(candidate, profile)
        except Exception as exc:  # pylint: disable=broad-except
            raise ContentGenerationError(f"{self.fallback.generator_name} generator failed: {exc}") from exc


class ContentCache(ABC):
    """Key/value store with per-entry expiry."""

    @abstractmethod
    def get(self, key: str) -> GeneratedContent | None: ...

    @abstractmethod
    def set_with_ttl(self, key: str, value: GeneratedContent, ttl_s: float) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...


class InMemoryContentCache(ContentCache):
    """Process-local cache. Expired entries are dropped on read and swept on every write."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._entries: dict[str, tuple[float, GeneratedContent]] = {}

    def get(self, key: str) -> GeneratedContent | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set_with_ttl(self, key: str, value: GeneratedContent, ttl_s: float) -> None:
        now = self.clock()
        expired = [name for name, (expires_at, _) in self._entries.items() if now >= expires_at]
        for name in expired:
            del self._entries[name]
        self._entries[key] = (now + ttl_s, value)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class CachedContentGenerator(ContentGenerator):
    """Reuse content for the same profile settings and candidate while it is fresh."""

    generator_name = "cached"

    def __init__(self, inner: ContentGenerator, cache: ContentCache, ttl_s: float) -> None:
        self.inner = inner
        self.cache = cache
        self.ttl_s = ttl_s

    @staticmethod
    def cache_key(candidate: JobCandidate, profile: AutomationProfile) -> str:
        version = profile.updated_at.isoformat() if profile.updated_at else "0"
        return f"content:{profile.id}:{version}:{candidate.id}"

    async def generate(self, candidate: JobCandidate, profile: AutomationProfile) -> GeneratedContent:
        key = self.cache_key(candidate, profile)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Content cache hit", job_candidate_id=candidate.id, profile_id=profile.id)
            return cached
        content = await self.inner.generate(candidate, profile)
        if self.ttl_s > 0:
            self.cache.set_with_ttl(key, content, self.ttl_s)
        return content


def build_content_generator(
    primary: ContentGenerator | None = None,
    *,
    cache_ttl_s: float = 3600,
    cache: ContentCache | None = None,
) -> ContentGenerator:
    """Assemble the generator stack: optional primary with template fallback, behind a cache."""

    generator: ContentGenerator = ResilientContentGenerator(primary) if primary else TemplateContentGenerator()
    if cache_ttl_s <= 0:
        return generator
    return CachedContentGenerator(generator, cache or InMemoryContentCache(), cache_ttl_s)
