"""Automation profile settings and lifecycle."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.errors import InvalidTransition, ProfileNotFound
from app.models import AutomationProfile, ProfileStatus, utcnow
from app.observability import get_logger
from app.schemas import RULE_FIELDS, ProfileConfig, ProfileUpdate
from services.queue import commit_or_raise
from services.rules import validate_rules

logger = get_logger(__name__)

PROFILE_TRANSITIONS: dict[ProfileStatus, frozenset[ProfileStatus]] = {
    ProfileStatus.ACTIVE: frozenset({ProfileStatus.PAUSED, ProfileStatus.STOPPED}),
    ProfileStatus.PAUSED: frozenset({ProfileStatus.ACTIVE, ProfileStatus.STOPPED}),
    ProfileStatus.STOPPED: frozenset({ProfileStatus.ACTIVE}),
}

_SETTING_DEFAULTS = {
    "minimum_quality_score": "default_minimum_quality_score",
    "minimum_personalization_score": "default_minimum_personalization_score",
    "minimum_ats_compatibility": "default_minimum_ats_compatibility",
    "auto_submit_threshold": "default_auto_submit_threshold",
    "approval_required": "default_approval_required",
    "daily_limit": "default_daily_limit",
    "weekly_limit": "default_weekly_limit",
    "monthly_limit": "default_monthly_limit",
    "max_retries": "default_max_retries",
}


def _rules_from(values: dict[str, Any]) -> dict[str, Any]:
    return {name: values[name] for name in RULE_FIELDS if name in values}


class ProfileService:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.clock = clock

    async def create(self, session: AsyncSession, config: ProfileConfig) -> AutomationProfile:
        """Validate the rules and store a new active profile. Omitted options take the configured defaults."""

        values = config.model_dump()
        rules = validate_rules(_rules_from(values))
        fields = {
            name: values[name] if values.get(name) is not None else getattr(self.settings, default)
            for name, default in _SETTING_DEFAULTS.items()
        }
        now = self.clock()
        profile = AutomationProfile(
            owner_id=config.owner_id,
            profile_name=config.profile_name,
            rules=rules.to_dict(),
            status=ProfileStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
            **fields,
        )
        session.add(profile)
        await commit_or_raise(session)
        logger.info("Automation profile created", profile_id=profile.id, owner_id=profile.owner_id)
        return profile

    async def get(self, session: AsyncSession, profile_id: str, *, include_deleted: bool = False) -> AutomationProfile:
        profile = await session.get(AutomationProfile, profile_id, populate_existing=True)
        if profile is None or (profile.deleted_at is not None and not include_deleted):
            raise ProfileNotFound(profile_id)
        return profile

    async def update(self, session: AsyncSession, profile_id: str, changes: ProfileUpdate) -> AutomationProfile:
        profile = await self.get(session, profile_id)
        values = changes.model_dump(exclude_unset=True)
        rule_changes = _rules_from(values)
        if rule_changes:
            merged = {**profile.rules, **rule_changes}
            profile.rules = validate_rules(merged).to_dict()
        for name in _SETTING_DEFAULTS:
            if values.get(name) is not None:
                setattr(profile, name, values[name])
        if values.get("profile_name"):
            profile.profile_name = values["profile_name"]
        profile.updated_at = self.clock()
        await commit_or_raise(session)
        logger.info("Automation profile updated", profile_id=profile.id, fields=sorted(values))
        return profile

    async def change_status(self, session: AsyncSession, profile_id: str, target: ProfileStatus) -> AutomationProfile:
        profile = await self.get(session, profile_id)
        current = ProfileStatus(profile.status)
        if current is target:
            return profile
        if target not in PROFILE_TRANSITIONS[current]:
            raise InvalidTransition(profile.id, current.value, target.value)
        profile.status = target.value
        if target is ProfileStatus.ACTIVE:
            profile.needs_attention = False
            profile.attention_reason = None
        profile.updated_at = self.clock()
        await commit_or_raise(session)
        logger.info("Automation profile status changed", profile_id=profile.id, from_status=current.value, status=target.value)
        return profile

    async def delete(self, session: AsyncSession, profile_id: str) -> AutomationProfile:
        """Soft delete: the profile stops and disappears from lookups, its queue history stays."""

        profile = await self.get(session, profile_id)
        now = self.clock()
        profile.status = ProfileStatus.STOPPED.value
        profile.deleted_at = now
        profile.updated_at = now
        await commit_or_raise(session)
        logger.info("Automation profile deleted", profile_id=profile.id)
        return profile
