import pytest

from app.errors import StorageError
from app.models import ProfileStatus, QueueState
from app.schemas import JobCandidateIn
from services.generation import TemplateContentGenerator
from services.pipeline import AutomationPipeline, SubmissionWorkerPool


def job(external_id, title, **fields):
    return JobCandidateIn(
        external_id=external_id,
        title=title,
        company=fields.pop("company", "Acme"),
        listing_url=f"https://jobs.example.com/{external_id}",
        **fields,
    )


@pytest.mark.asyncio
async def test_unpaid_internship_never_enters_queue(session, pipeline, make_profile):
    profile = await make_profile(exclude_keywords=["unpaid"])

    results = await pipeline.ingest(
        session, profile, [job("j-1", "Unpaid Internship"), job("j-2", "Backend Engineer")]
    )

    unpaid, engineer = results
    assert unpaid.evaluation.eligible is False
    assert unpaid.item is None
    assert engineer.item is not None
    items = await pipeline.queue.list_items(session, profile_id=profile.id)
    assert [item.job_candidate_id for item in items] == [engineer.candidate.id]


@pytest.mark.asyncio
async def test_reingesting_a_candidate_does_not_duplicate(session, pipeline, make_profile):
    profile = await make_profile()

    first = await pipeline.ingest(session, profile, [job("j-1", "Backend Engineer")])
    second = await pipeline.ingest(session, profile, [job("j-1", "Backend Engineer")])

    assert first[0].item.id == second[0].item.id
    assert first[0].candidate.id == second[0].candidate.id


@pytest.mark.asyncio
async def test_generate_pending_routes_through_quality_gate(session, pipeline, generator, make_profile):
    profile = await make_profile(approval_required=True)
    await pipeline.ingest(session, profile, [job("j-1", "Backend Engineer")])

    generated = await pipeline.generate_pending(session, profile_id=profile.id)

    (item,) = await pipeline.queue.list_items(session, profile_id=profile.id)
    assert generated == 1
    assert generator.calls == 1
    assert item.state == QueueState.PENDING_REVIEW.value
    assert item.quality_score == 0.95
    assert item.generated_content["cover_letter"].startswith("Cover letter for Backend Engineer")


@pytest.mark.asyncio
async def test_low_scores_are_rejected(session, pipeline, generator, make_profile):
    generator.scores = (0.5, 0.95, 0.95)
    profile = await make_profile(minimum_quality_score=0.7)
    await pipeline.ingest(session, profile, [job("j-1", "Backend Engineer")])

    await pipeline.generate_pending(session, profile_id=profile.id)

    (item,) = await pipeline.queue.list_items(session, profile_id=profile.id)
    assert item.state == QueueState.REJECTED.value
    assert "quality" in item.state_reason


@pytest.mark.asyncio
async def test_paused_profile_is_not_generated(session, pipeline, profiles, make_profile):
    profile = await make_profile()
    await pipeline.ingest(session, profile, [job("j-1", "Backend Engineer")])
    await profiles.change_status(session, profile.id, ProfileStatus.PAUSED)

    assert await pipeline.generate_pending(session, profile_id=profile.id) == 0


@pytest.mark.asyncio
async def test_worker_pool_submits_in_priority_order(session, session_factory, queue, make_profile, make_item, make_executor):
    profile = await make_profile(approval_required=False)
    await make_item(profile, title="Low", urgency="low")
    await make_item(profile, title="High", urgency="high")
    await make_item(profile, title="Medium", urgency="medium")
    executor, submitter = make_executor()
    workers = SubmissionWorkerPool(session_factory, queue, executor, concurrency=1, name="test")

    summary = await workers.run_once(profile_id=profile.id)

    assert summary.attempted == 3
    assert summary.outcomes == {QueueState.SUBMITTED.value: 3}
    assert [request.position for request in submitter.requests] == ["High", "Medium", "Low"]


@pytest.mark.asyncio
async def test_worker_pool_skips_capped_items(session, session_factory, queue, make_profile, make_item, make_executor):
    profile = await make_profile(approval_required=False, daily_limit=1)
    await make_item(profile)
    await make_item(profile)
    executor, submitter = make_executor()
    workers = SubmissionWorkerPool(session_factory, queue, executor, concurrency=1, name="test")

    summary = await workers.run_once()

    assert summary.attempted == 1
    assert summary.skipped == 1
    assert len(submitter.requests) == 1


@pytest.mark.asyncio
async def test_unrenderable_stored_template_rejects_only_that_item(session, queue, make_profile):
    profile = await make_profile(
        approval_required=True,
        minimum_quality_score=0.5,
        minimum_personalization_score=0.5,
        minimum_ats_compatibility=0.5,
    )
    pipeline = AutomationPipeline(queue, TemplateContentGenerator())
    await pipeline.ingest(
        session, profile, [job("j-1", "Backend Engineer"), job("j-2", "Data Engineer", company="Globex")]
    )
    # Rows saved before templates were checked on save can still hold a broken one
    profile.rules = {**profile.rules, "cover_letter_templates": {"acme": "Salary expectation: {negotiable"}}
    await session.commit()

    generated = await pipeline.generate_pending(session, profile_id=profile.id)

    items = {item.candidate.company: item for item in await queue.list_items(session, profile_id=profile.id)}
    assert generated == 2
    assert items["Acme"].state == QueueState.REJECTED.value
    assert "could not be rendered" in items["Acme"].state_reason
    assert items["Globex"].state == QueueState.PENDING_REVIEW.value
    assert "Globex" in items["Globex"].generated_content["cover_letter"]


@pytest.mark.asyncio
async def test_parallel_workers_respect_the_daily_cap(session_factory, queue, make_profile, make_item, make_executor):
    profile = await make_profile(approval_required=False, daily_limit=1)
    for _ in range(4):
        await make_item(profile)
    executor, submitter = make_executor()
    workers = SubmissionWorkerPool(session_factory, queue, executor, concurrency=4, name="test")

    summary = await workers.run_once(profile_id=profile.id)

    assert len(submitter.requests) == 1
    assert summary.attempted == 1
    assert summary.skipped == 3
    assert summary.errors == 0


@pytest.mark.asyncio
async def test_worker_pool_finishes_the_pass_when_one_item_fails(
    session_factory, queue, make_profile, make_item, make_executor, monkeypatch
):
    profile = await make_profile(approval_required=False)
    doomed = await make_item(profile, title="Doomed", urgency="high")
    doomed_id = doomed.id
    await make_item(profile, title="Fine")
    await make_item(profile, title="Also Fine")
    executor, submitter = make_executor()
    execute = executor.execute

    async def execute_or_fail(session, item):
        if item.id == doomed_id:
            raise StorageError("database is locked")
        return await execute(session, item)

    monkeypatch.setattr(executor, "execute", execute_or_fail)
    workers = SubmissionWorkerPool(session_factory, queue, executor, concurrency=2, name="test")

    summary = await workers.run_once(profile_id=profile.id)

    assert summary.errors == 1
    assert summary.attempted == 3
    assert summary.outcomes == {QueueState.SUBMITTED.value: 2}
    assert sorted(request.position for request in submitter.requests) == ["Also Fine", "Fine"]
