"""Rule evaluation for incoming job candidates."""
from __future__ import annotations

import string
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from app.errors import RuleValidationError

BASE_PRIORITY = 50
PRIORITIZE_KEYWORD_BONUS = 10
PREFERRED_COMPANY_BONUS = 15
EXCLUDE_PENALTY = 100

CONSTRAINTS = frozenset({"keywords", "companies", "locations", "salary", "experience_level"})

_LIST_FIELDS = (
    "keywords",
    "exclude_keywords",
    "companies",
    "exclude_companies",
    "locations",
    "exclude_locations",
    "experience_level",
    "prioritize_keywords",
    "preferred_companies",
)
_MAPPING_FIELDS = ("cover_letter_templates", "resume_highlights", "custom_answers")
_FORMATTER = string.Formatter()


class CandidateLike(Protocol):
    title: str
    company: str
    description: str
    requirements: Sequence[str]
    skills: Sequence[str]
    location: str | None
    salary_min: float | None
    salary_max: float | None
    experience_level: str | None


@dataclass(frozen=True)
class RuleSet:
    """Normalized include/exclude/prioritize rules of one profile."""

    keywords: tuple[str, ...] = ()
    exclude_keywords: tuple[str, ...] = ()
    companies: tuple[str, ...] = ()
    exclude_companies: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    exclude_locations: tuple[str, ...] = ()
    salary_min: float | None = None
    salary_max: float | None = None
    experience_level: tuple[str, ...] = ()
    prioritize_keywords: tuple[str, ...] = ()
    preferred_companies: tuple[str, ...] = ()
    mandatory: frozenset[str] = frozenset()
    cover_letter_templates: Mapping[str, str] = field(default_factory=dict)
    resume_highlights: Mapping[str, Any] = field(default_factory=dict)
    custom_answers: Mapping[str, Any] = field(default_factory=dict)

    @property
    def has_salary_range(self) -> bool:
        return self.salary_min is not None or self.salary_max is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _LIST_FIELDS:
            data[name] = list(data[name])
        data["mandatory"] = sorted(self.mandatory)
        data["salary_range"] = {"min": data.pop("salary_min"), "max": data.pop("salary_max")}
        for name in _MAPPING_FIELDS:
            data[name] = dict(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "RuleSet":
        """Build a rule set from stored or submitted settings, validating as it goes."""
        return validate_rules(data or {})


@dataclass(frozen=True)
class RuleEvaluation:
    eligible: bool
    priority: int
    reasons: tuple[str, ...] = ()


def validate_rules(data: Mapping[str, Any]) -> RuleSet:
    """Normalize ``data`` into a :class:`RuleSet` or raise :class:`RuleValidationError`."""

    errors: list[str] = []
    values: dict[str, Any] = {}

    for name in _LIST_FIELDS:
        raw = data.get(name) or []
        if isinstance(raw, str) or not isinstance(raw, Sequence):
            errors.append(f"{name} must be a list of strings")
            continue
        terms: list[str] = []
        for term in raw:
            if not isinstance(term, str) or not term.strip():
                errors.append(f"{name} contains an empty or non-string term")
                break
            terms.append(term.strip())
        values[name] = tuple(terms)

    salary = data.get("salary_range") or {}
    if not isinstance(salary, Mapping):
        errors.append("salary_range must be an object with min and max")
        salary = {}
    salary_min = salary.get("min")
    salary_max = salary.get("max")
    for label, bound in (("min", salary_min), ("max", salary_max)):
        if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float)) or bound < 0):
            errors.append(f"salary_range.{label} must be a non-negative number")
    if isinstance(salary_min, (int, float)) and isinstance(salary_max, (int, float)) and salary_min > salary_max:
        errors.append("salary_range.min cannot exceed salary_range.max")

    mandatory = data.get("mandatory") or []
    unknown = sorted(set(mandatory) - CONSTRAINTS)
    if unknown:
        errors.append(f"unknown mandatory constraint(s): {', '.join(unknown)}")

    for name in _MAPPING_FIELDS:
        raw = data.get(name) or {}
        if not isinstance(raw, Mapping):
            errors.append(f"{name} must be an object")
            continue
        values[name] = dict(raw)

    errors.extend(_template_errors(values.get("cover_letter_templates") or {}))

    if errors:
        raise RuleValidationError(errors)

    return RuleSet(
        salary_min=salary_min,
        salary_max=salary_max,
        mandatory=frozenset(mandatory),
        **values,
    )


def _template_errors(templates: Mapping[str, Any]) -> list[str]:
    """Check cover letter templates render with named placeholders only."""

    errors: list[str] = []
    for key, template in templates.items():
        label = f"cover_letter_templates.{key}"
        if not isinstance(template, str):
            errors.append(f"{label} must be a string")
            continue
        try:
            fields = list(_FORMATTER.parse(template))
        except ValueError as exc:
            errors.append(f"{label}: {exc}")
            continue
        for _, name, spec, conversion in fields:
            if name is None:
                continue
            if not name.isidentifier():
                errors.append(f"{label}: placeholder {{{name}}} must be a plain name")
            elif spec or conversion:
                errors.append(f"{label}: placeholder {{{name}}} cannot carry a format spec or conversion")
    return errors


def _contains_any(haystack: str, terms: Sequence[str]) -> list[str]:
    lowered = haystack.lower()
    return [term for term in terms if term.lower() in lowered]


def _candidate_text(candidate: CandidateLike) -> str:
    parts = [candidate.title, candidate.description or ""]
    parts.extend(candidate.requirements or [])
    parts.extend(candidate.skills or [])
    return " ".join(parts)


def evaluate(candidate: CandidateLike, rules: RuleSet) -> RuleEvaluation:
    """Decide whether ``candidate`` is eligible under ``rules`` and how urgently to apply.

    Exclusions always win. A configured include constraint that the candidate
    contradicts makes it ineligible; one it cannot be checked against (missing
    field) only does so when the constraint is mandatory.
    """

    reasons: list[str] = []
    eligible = True
    priority = BASE_PRIORITY
    text = _candidate_text(candidate)

    excluded = _contains_any(text, rules.exclude_keywords)
    excluded += _contains_any(candidate.company, rules.exclude_companies)
    if candidate.location:
        excluded += _contains_any(candidate.location, rules.exclude_locations)
    if excluded:
        eligible = False
        priority -= EXCLUDE_PENALTY
        reasons.append(f"excluded by: {', '.join(excluded)}")

    def check(name: str, present: bool, matched: bool, detail: str) -> None:
        nonlocal eligible
        if not present:
            reasons.append(f"{name}: no data")
            if name in rules.mandatory:
                eligible = False
                reasons.append(f"{name}: required but missing")
            return
        if matched:
            reasons.append(f"{name}: matched {detail}")
        else:
            eligible = False
            reasons.append(f"{name}: no match")

    if rules.keywords:
        hits = _contains_any(text, rules.keywords)
        check("keywords", True, bool(hits), ", ".join(hits))
    if rules.companies:
        hits = _contains_any(candidate.company, rules.companies)
        check("companies", True, bool(hits), ", ".join(hits))
    if rules.locations:
        hits = _contains_any(candidate.location or "", rules.locations)
        check("locations", bool(candidate.location), bool(hits), ", ".join(hits))
    if rules.has_salary_range:
        low = candidate.salary_min if candidate.salary_min is not None else candidate.salary_max
        high = candidate.salary_max if candidate.salary_max is not None else candidate.salary_min
        present = low is not None
        in_range = present and (rules.salary_max is None or low <= rules.salary_max) and (
            rules.salary_min is None or high >= rules.salary_min
        )
        check("salary", present, in_range, f"{low}-{high}")
    if rules.experience_level:
        level = (candidate.experience_level or "").lower()
        matched = level in {value.lower() for value in rules.experience_level}
        check("experience_level", bool(level), matched, level)

    for keyword in _contains_any(text, rules.prioritize_keywords):
        priority += PRIORITIZE_KEYWORD_BONUS
        reasons.append(f"priority keyword: {keyword}")
    if _contains_any(candidate.company, rules.preferred_companies):
        priority += PREFERRED_COMPANY_BONUS
        reasons.append(f"preferred company: {candidate.company}")

    return RuleEvaluation(eligible=eligible, priority=priority, reasons=tuple(reasons))
