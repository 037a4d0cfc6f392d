import pytest

from app.errors import InvalidTransition, ProfileNotFound, RuleValidationError
from app.models import ProfileStatus
from app.schemas import ProfileConfig, ProfileUpdate, SalaryRange


@pytest.mark.asyncio
async def test_create_applies_configured_defaults(make_profile, settings):
    profile = await make_profile(keywords=["python"], daily_limit=4)

    assert profile.status == ProfileStatus.ACTIVE.value
    assert profile.daily_limit == 4
    assert profile.weekly_limit == settings.default_weekly_limit
    assert profile.minimum_quality_score == settings.default_minimum_quality_score
    assert profile.approval_required is settings.default_approval_required
    assert profile.rules["keywords"] == ["python"]


@pytest.mark.asyncio
async def test_malformed_rules_rejected_at_save(session, profiles):
    config = ProfileConfig(owner_id="user-123", salary_range=SalaryRange(min=200, max=100))

    with pytest.raises(RuleValidationError):
        await profiles.create(session, config)


@pytest.mark.asyncio
async def test_unrenderable_template_rejected_at_save(session, profiles):
    config = ProfileConfig(owner_id="user-123", cover_letter_templates={"default": "Salary expectation: {negotiable"})

    with pytest.raises(RuleValidationError) as excinfo:
        await profiles.create(session, config)

    assert any("cover_letter_templates.default" in error for error in excinfo.value.errors)


@pytest.mark.asyncio
async def test_update_merges_rules(session, profiles, make_profile):
    profile = await make_profile(keywords=["python"], exclude_keywords=["unpaid"])

    updated = await profiles.update(
        session, profile.id, ProfileUpdate(exclude_keywords=["unpaid", "volunteer"], auto_submit_threshold=0.9)
    )

    assert updated.rules["keywords"] == ["python"]
    assert updated.rules["exclude_keywords"] == ["unpaid", "volunteer"]
    assert updated.auto_submit_threshold == 0.9


@pytest.mark.asyncio
async def test_status_lifecycle(session, profiles, make_profile):
    profile = await make_profile()
    profile.needs_attention = True
    await session.commit()

    paused = await profiles.change_status(session, profile.id, ProfileStatus.PAUSED)
    assert paused.status == ProfileStatus.PAUSED.value
    stopped = await profiles.change_status(session, profile.id, ProfileStatus.STOPPED)
    assert stopped.status == ProfileStatus.STOPPED.value
    with pytest.raises(InvalidTransition):
        await profiles.change_status(session, profile.id, ProfileStatus.PAUSED)

    restarted = await profiles.change_status(session, profile.id, ProfileStatus.ACTIVE)
    assert restarted.status == ProfileStatus.ACTIVE.value
    assert restarted.needs_attention is False


@pytest.mark.asyncio
async def test_delete_is_soft(session, profiles, make_profile):
    profile = await make_profile()

    await profiles.delete(session, profile.id)

    with pytest.raises(ProfileNotFound):
        await profiles.get(session, profile.id)
    kept = await profiles.get(session, profile.id, include_deleted=True)
    assert kept.deleted_at is not None
    assert kept.status == ProfileStatus.STOPPED.value
