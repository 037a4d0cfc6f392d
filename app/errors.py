"""Error taxonomy for the application pipeline."""
from __future__ import annotations

from datetime import datetime


class AutomationError(Exception):
    """Base class for pipeline errors."""


class RuleValidationError(AutomationError):
    """A rule set is malformed. Raised when a profile is saved."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid automation rules: " + "; ".join(errors))
        self.errors = errors


class QualityBelowThreshold(AutomationError):
    """Generated content scored below a profile minimum."""

    def __init__(self, metric: str, score: float, minimum: float) -> None:
        super().__init__(f"{metric} {score:.2f} is below the minimum of {minimum:.2f}")
        self.metric = metric
        self.score = score
        self.minimum = minimum


class RateLimitExceeded(AutomationError):
    """A profile reached one of its submission caps."""

    def __init__(self, retry_at: datetime, windows: list[str]) -> None:
        super().__init__(f"Submission cap reached for {', '.join(windows)} window(s) until {retry_at.isoformat()}")
        self.retry_at = retry_at
        self.windows = windows


class SubmissionError(AutomationError):
    """Base class for failures reported by a submission collaborator."""

    def __init__(self, detail: str, http_status: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.http_status = http_status


class SubmissionTransientError(SubmissionError):
    """The submission failed but a retry may succeed."""


class SubmissionPermanentError(SubmissionError):
    """The submission needs a human before it can go through."""

    def __init__(
        self,
        detail: str,
        http_status: int | None = None,
        *,
        captcha_encountered: bool = False,
        human_intervention_required: bool = False,
    ) -> None:
        super().__init__(detail, http_status)
        self.captcha_encountered = captcha_encountered
        self.human_intervention_required = human_intervention_required


class ContentGenerationError(AutomationError):
    """No content could be produced for a queue item."""


class InvalidTransition(AutomationError):
    """A state change that the queue or profile state machine does not allow."""

    def __init__(self, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity_id} from {current} to {target}")
        self.entity_id = entity_id
        self.current = current
        self.target = target


class QueueItemNotFound(AutomationError):
    pass


class ProfileNotFound(AutomationError):
    pass


class StorageError(AutomationError):
    """Persisting a change failed; the change is not in effect."""
