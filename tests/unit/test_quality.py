import math

import pytest

from app.errors import QualityBelowThreshold
from app.models import QueueState
from services.quality import QualityGate, QualityScores, QualityThresholds


def thresholds(**overrides):
    values = {
        "minimum_quality_score": 0.7,
        "minimum_personalization_score": 0.7,
        "minimum_ats_compatibility": 0.7,
        "auto_submit_threshold": 0.9,
        "approval_required": False,
    }
    values.update(overrides)
    return QualityThresholds(**values)


def test_high_scores_without_approval_are_ready_to_submit():
    decision = QualityGate().evaluate(QualityScores(0.95, 0.95, 0.95), thresholds())

    assert decision.state is QueueState.READY_TO_SUBMIT


def test_high_scores_with_approval_go_to_review():
    decision = QualityGate().evaluate(QualityScores(0.95, 0.95, 0.95), thresholds(approval_required=True))

    assert decision.state is QueueState.PENDING_REVIEW
    assert decision.reason == "approval required"


def test_score_below_minimum_is_rejected():
    decision = QualityGate().evaluate(QualityScores(0.5, 0.95, 0.95), thresholds())

    assert decision.state is QueueState.REJECTED
    assert "quality" in decision.reason


def test_between_minimum_and_auto_threshold_goes_to_review():
    decision = QualityGate().evaluate(QualityScores(0.95, 0.85, 0.95), thresholds())

    assert decision.state is QueueState.PENDING_REVIEW
    assert decision.reason == "below auto-submit threshold"


@pytest.mark.parametrize("bad", [1.4, -0.1, math.nan, None])
def test_out_of_range_scores_always_go_to_review(bad):
    decision = QualityGate().evaluate(QualityScores(0.99, bad, 0.99), thresholds())

    assert decision.state is QueueState.PENDING_REVIEW
    assert decision.reason.startswith("score data error")
    assert 0.0 <= decision.scores.personalization <= 1.0


def test_check_minimums_names_the_failing_metric():
    with pytest.raises(QualityBelowThreshold) as excinfo:
        QualityGate().check_minimums(QualityScores(0.9, 0.9, 0.6), thresholds())

    assert excinfo.value.metric == "ats_compatibility"
    assert excinfo.value.minimum == 0.7
