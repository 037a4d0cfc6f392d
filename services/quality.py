"""Quality gate routing generated content to submission, review or rejection."""
from __future__ import annotations

import math
from dataclasses import dataclass

from app.errors import QualityBelowThreshold
from app.models import QueueState
from app.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class QualityScores:
    quality: float
    personalization: float
    ats_compatibility: float

    def as_dict(self) -> dict[str, float]:
        return {
            "quality": self.quality,
            "personalization": self.personalization,
            "ats_compatibility": self.ats_compatibility,
        }


@dataclass(frozen=True)
class QualityThresholds:
    minimum_quality_score: float
    minimum_personalization_score: float
    minimum_ats_compatibility: float
    auto_submit_threshold: float
    approval_required: bool

    @classmethod
    def from_profile(cls, profile) -> "QualityThresholds":
        return cls(
            minimum_quality_score=profile.minimum_quality_score,
            minimum_personalization_score=profile.minimum_personalization_score,
            minimum_ats_compatibility=profile.minimum_ats_compatibility,
            auto_submit_threshold=profile.auto_submit_threshold,
            approval_required=profile.approval_required,
        )


@dataclass(frozen=True)
class QualityDecision:
    state: QueueState
    scores: QualityScores
    reason: str


def _clamp(value: float) -> tuple[float, bool]:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0.0, False
    if value < 0.0:
        return 0.0, False
    if value > 1.0:
        return 1.0, False
    return float(value), True


class QualityGate:
    """Map content scores and profile thresholds to a queue routing outcome."""

    def check_minimums(self, scores: QualityScores, thresholds: QualityThresholds) -> None:
        """Raise :class:`QualityBelowThreshold` for the first metric under its minimum."""

        for metric, score, minimum in (
            ("quality", scores.quality, thresholds.minimum_quality_score),
            ("personalization", scores.personalization, thresholds.minimum_personalization_score),
            ("ats_compatibility", scores.ats_compatibility, thresholds.minimum_ats_compatibility),
        ):
            if score < minimum:
                raise QualityBelowThreshold(metric, score, minimum)

    def evaluate(self, raw: QualityScores, thresholds: QualityThresholds) -> QualityDecision:
        clamped: list[float] = []
        out_of_range: list[str] = []
        for metric, value in raw.as_dict().items():
            score, valid = _clamp(value)
            clamped.append(score)
            if not valid:
                out_of_range.append(f"{metric}={value!r}")
        scores = QualityScores(*clamped)

        if out_of_range:
            logger.warning("Content scores outside [0, 1]", scores=out_of_range)
            return QualityDecision(
                QueueState.PENDING_REVIEW, scores, f"score data error: {', '.join(out_of_range)}"
            )

        try:
            self.check_minimums(scores, thresholds)
        except QualityBelowThreshold as exc:
            return QualityDecision(QueueState.REJECTED, scores, str(exc))

        auto_ok = all(score >= thresholds.auto_submit_threshold for score in clamped)
        if auto_ok and not thresholds.approval_required:
            return QualityDecision(QueueState.READY_TO_SUBMIT, scores, "auto-submit threshold met")
        if auto_ok:
            return QualityDecision(QueueState.PENDING_REVIEW, scores, "approval required")
        return QualityDecision(QueueState.PENDING_REVIEW, scores, "below auto-submit threshold")
