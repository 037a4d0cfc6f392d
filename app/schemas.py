"""Pydantic schemas shared across services."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RULE_FIELDS = (
    "keywords",
    "exclude_keywords",
    "companies",
    "exclude_companies",
    "locations",
    "exclude_locations",
    "salary_range",
    "experience_level",
    "prioritize_keywords",
    "preferred_companies",
    "mandatory",
    "cover_letter_templates",
    "resume_highlights",
    "custom_answers",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SalaryRange(CamelModel):
    min: float | None = None
    max: float | None = None


class ProfileUpdate(CamelModel):
    """Profile options. Unset options keep their stored (or default) value."""

    profile_name: str | None = None

    keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)
    companies: list[str] = Field(default_factory=list)
    exclude_companies: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    exclude_locations: list[str] = Field(default_factory=list)
    salary_range: SalaryRange | None = None
    experience_level: list[str] = Field(default_factory=list)
    prioritize_keywords: list[str] = Field(default_factory=list)
    preferred_companies: list[str] = Field(default_factory=list)
    mandatory: list[str] = Field(default_factory=list, description="Constraints that fail when the job lacks the field")
    cover_letter_templates: dict[str, str] = Field(default_factory=dict)
    resume_highlights: dict[str, Any] = Field(default_factory=dict)
    custom_answers: dict[str, Any] = Field(default_factory=dict)

    minimum_quality_score: float | None = Field(default=None, ge=0, le=1)
    minimum_personalization_score: float | None = Field(default=None, ge=0, le=1)
    minimum_ats_compatibility: float | None = Field(default=None, ge=0, le=1)
    auto_submit_threshold: float | None = Field(default=None, ge=0, le=1)
    approval_required: bool | None = None

    daily_limit: int | None = Field(default=None, ge=0)
    weekly_limit: int | None = Field(default=None, ge=0)
    monthly_limit: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=0)


class ProfileConfig(ProfileUpdate):
    owner_id: str
    profile_name: str = "Default"


class ProfileView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    profile_name: str
    rules: dict[str, Any]
    minimum_quality_score: float
    minimum_personalization_score: float
    minimum_ats_compatibility: float
    auto_submit_threshold: float
    approval_required: bool
    daily_limit: int
    weekly_limit: int
    monthly_limit: int
    max_retries: int
    status: str
    needs_attention: bool
    attention_reason: str | None = None
    total_applications: int
    success_rate: float
    created_at: datetime
    updated_at: datetime


class JobCandidateIn(CamelModel):
    external_id: str = Field(..., min_length=1)
    source: str = "manual"
    title: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    description: str = ""
    requirements: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    location: str | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    experience_level: str | None = None
    urgency: str = Field(default="medium", pattern="^(low|medium|high)$")
    listing_url: str | None = None


class CandidateBatch(BaseModel):
    candidates: list[JobCandidateIn]


class CandidateEvaluation(BaseModel):
    external_id: str
    eligible: bool
    priority: int
    reasons: list[str]
    queue_item_id: str | None = None


class QueueItemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    profile_id: str
    job_candidate_id: str
    state: str
    state_reason: str | None = None
    generated_content: dict[str, Any] | None = None
    quality_score: float | None = None
    personalization_score: float | None = None
    ats_compatibility: float | None = None
    review_status: str | None = None
    review_notes: str | None = None
    retry_count: int
    max_retries: int
    attempt_count: int
    next_eligible_at: datetime | None = None
    priority: int
    match_reasons: list[str] = Field(default_factory=list)
    submitted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ReviewDecision(BaseModel):
    approved: bool
    notes: str | None = None


class SubmissionAttemptView(CamelModel):
    """Submission log entry."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    queue_item_id: str
    attempt_number: int
    timestamp: datetime
    outcome: str
    http_status_or_equivalent: int | None = Field(
        default=None, validation_alias=AliasChoices("http_status", "httpStatusOrEquivalent")
    )
    error_detail: str | None = None
    duration_ms: int
    captcha_encountered: bool
    human_intervention_required: bool


class ProcessSummary(BaseModel):
    generated: int
    attempted: int
    skipped: int
    reclaimed: int
    errors: int = 0
    outcomes: dict[str, int]


class WindowUsageView(BaseModel):
    """Submissions counted in the current day, week or month window."""

    model_config = ConfigDict(from_attributes=True)

    kind: str
    count: int
    cap: int
    remaining: int
    resets_at: datetime


class AnalyticsReport(BaseModel):
    profile_id: str
    start: datetime
    end: datetime
    total_items: int
    state_counts: dict[str, int]
    submitted: int
    failed_permanent: int
    retries_exhausted: int
    success_rate: float | None = None
    average_quality_score: float | None = None
    average_personalization_score: float | None = None
    average_ats_compatibility: float | None = None
    throughput_per_day: float
    total_attempts: int
    average_attempt_duration_ms: float | None = None
    most_common_errors: list[str] = Field(default_factory=list)
