"""Database models for the application pipeline."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column in this schema stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware timestamp to the naive UTC form stored in the database."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class QueueState(str, Enum):
    """Queue item lifecycle states."""

    QUEUED = "queued"
    GENERATING = "generating"
    PENDING_REVIEW = "pending_review"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED_TRANSIENT = "failed_transient"
    RETRYING = "retrying"
    FAILED_PERMANENT = "failed_permanent"
    REJECTED = "rejected"


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class WindowKind(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class AutomationProfile(Base):
    __tablename__ = "automation_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(120), index=True)
    profile_name: Mapped[str] = mapped_column(String(200), default="Default")
    rules: Mapped[dict] = mapped_column(JSON, default=dict)

    minimum_quality_score: Mapped[float] = mapped_column(Float)
    minimum_personalization_score: Mapped[float] = mapped_column(Float)
    minimum_ats_compatibility: Mapped[float] = mapped_column(Float)
    auto_submit_threshold: Mapped[float] = mapped_column(Float)
    approval_required: Mapped[bool] = mapped_column(Boolean, default=True)

    daily_limit: Mapped[int] = mapped_column(Integer)
    weekly_limit: Mapped[int] = mapped_column(Integer)
    monthly_limit: Mapped[int] = mapped_column(Integer)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    status: Mapped[str] = mapped_column(String(20), default=ProfileStatus.ACTIVE.value)
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False)
    attention_reason: Mapped[str | None] = mapped_column(Text)
    total_applications: Mapped[int] = mapped_column(Integer, default=0)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)

    @property
    def is_schedulable(self) -> bool:
        return self.deleted_at is None and self.status == ProfileStatus.ACTIVE.value


class JobCandidate(Base):
    __tablename__ = "job_candidates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_id: Mapped[str] = mapped_column(String(200), unique=True)
    source: Mapped[str] = mapped_column(String(80), default="manual")
    title: Mapped[str] = mapped_column(String(200))
    company: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    requirements: Mapped[list[str]] = mapped_column(JSON, default=list)
    skills: Mapped[list[str]] = mapped_column(JSON, default=list)
    location: Mapped[str | None] = mapped_column(String(200))
    salary_min: Mapped[float | None] = mapped_column(Float)
    salary_max: Mapped[float | None] = mapped_column(Float)
    experience_level: Mapped[str | None] = mapped_column(String(50))
    urgency: Mapped[str] = mapped_column(String(10), default="medium")
    listing_url: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        UniqueConstraint("profile_id", "job_candidate_id", name="uq_queue_profile_candidate"),
        CheckConstraint("retry_count <= max_retries", name="ck_queue_retry_bound"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("automation_profiles.id"), nullable=False, index=True)
    job_candidate_id: Mapped[str] = mapped_column(ForeignKey("job_candidates.id"), nullable=False)
    state: Mapped[str] = mapped_column(String(30), default=QueueState.QUEUED.value, index=True)

    generated_content: Mapped[dict | None] = mapped_column(JSON)
    quality_score: Mapped[float | None] = mapped_column(Float)
    personalization_score: Mapped[float | None] = mapped_column(Float)
    ats_compatibility: Mapped[float | None] = mapped_column(Float)

    review_status: Mapped[str | None] = mapped_column(String(20))
    review_notes: Mapped[str | None] = mapped_column(Text)
    state_reason: Mapped[str | None] = mapped_column(Text)
    match_reasons: Mapped[list[str]] = mapped_column(JSON, default=list)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_eligible_at: Mapped[datetime | None] = mapped_column(DateTime)
    priority: Mapped[int] = mapped_column(Integer, default=50, index=True)

    lease_owner: Mapped[str | None] = mapped_column(String(120))
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    profile: Mapped[AutomationProfile] = relationship("AutomationProfile", lazy="joined")
    candidate: Mapped[JobCandidate] = relationship("JobCandidate", lazy="joined")

    # Every ORM flush of an item checks and bumps this; statement-level updates bump it by hand
    __mapper_args__ = {"version_id_col": version}


class SubmissionAttempt(Base):
    __tablename__ = "submission_attempts"
    __table_args__ = (UniqueConstraint("queue_item_id", "attempt_number", name="uq_attempt_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    queue_item_id: Mapped[str] = mapped_column(ForeignKey("queue_items.id"), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    outcome: Mapped[str] = mapped_column(String(30))
    http_status: Mapped[int | None] = mapped_column(Integer)
    error_detail: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    captcha_encountered: Mapped[bool] = mapped_column(Boolean, default=False)
    human_intervention_required: Mapped[bool] = mapped_column(Boolean, default=False)
    response: Mapped[dict | None] = mapped_column(JSON)


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"
    __table_args__ = (UniqueConstraint("profile_id", "kind", "window_start", name="uq_rate_window"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    profile_id: Mapped[str] = mapped_column(ForeignKey("automation_profiles.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(10))
    window_start: Mapped[datetime] = mapped_column(DateTime)
    count: Mapped[int] = mapped_column(Integer, default=0)
