"""Service layer for rule evaluation, queueing and submission."""

from .analytics import AnalyticsAggregator
from .generation import ContentGenerator, TemplateContentGenerator, build_content_generator
from .pipeline import AutomationPipeline, SubmissionWorkerPool
from .profiles import ProfileService
from .quality import QualityGate
from .queue import ApplicationQueue
from .rate_limiter import RateLimiter
from .rules import RuleSet, evaluate
from .submission import RetryPolicy, SubmissionExecutor, build_submitter

__all__ = [
    "AnalyticsAggregator",
    "ApplicationQueue",
    "AutomationPipeline",
    "ContentGenerator",
    "ProfileService",
    "QualityGate",
    "RateLimiter",
    "RetryPolicy",
    "RuleSet",
    "SubmissionExecutor",
    "SubmissionWorkerPool",
    "TemplateContentGenerator",
    "build_content_generator",
    "build_submitter",
    "evaluate",
]
