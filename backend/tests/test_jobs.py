from datetime import datetime, timedelta

import pytest

from conftest import FakeOpenAIService, first_two_dims
from hive_analysis.core.config import Settings
from hive_analysis.models import AnalysisJob, AnalysisJobStatus
from hive_analysis.services.analysis import AnalysisService
from hive_analysis.services.jobs import (
    STRATEGY_FULL,
    STRATEGY_INCREMENTAL,
    choose_strategy,
    claim_job,
    enqueue_analysis,
    run_job,
    run_pending_jobs,
)
from hive_analysis.services.state import AnalysisStatus


@pytest.mark.asyncio
async def test_enqueue_reuses_active_job(session, seed_conversation):
    conversation, _ = await seed_conversation(["one", "two"])

    first = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    second = await enqueue_analysis(session, conversation.id, STRATEGY_INCREMENTAL)

    assert first.id == second.id
    assert second.strategy == STRATEGY_FULL
    with pytest.raises(ValueError):
        await enqueue_analysis(session, conversation.id, "partial")


@pytest.mark.asyncio
async def test_claim_succeeds_exactly_once(session, seed_conversation):
    conversation, _ = await seed_conversation(["one"])
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)

    assert await claim_job(session, job.id) is True
    assert await claim_job(session, job.id) is False

    await session.refresh(job)
    assert job.status == AnalysisJobStatus.RUNNING
    assert job.locked_at is not None


@pytest.mark.asyncio
async def test_stale_lock_can_be_reclaimed(session, seed_conversation):
    conversation, _ = await seed_conversation(["one"])
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    claimed_at = datetime.utcnow()
    assert await claim_job(session, job.id, now=claimed_at)

    assert await claim_job(session, job.id, now=claimed_at + timedelta(minutes=5)) is False
    assert await claim_job(session, job.id, now=claimed_at + timedelta(minutes=16)) is True


@pytest.mark.asyncio
async def test_choose_strategy(session, seed_conversation, clustered_texts):
    conversation, _ = await seed_conversation(list(clustered_texts))
    assert await choose_strategy(session, conversation.id) == STRATEGY_FULL

    service = AnalysisService(session, FakeOpenAIService(clustered_texts), reducer=first_two_dims)
    await service.run_full(conversation.id)
    assert await choose_strategy(session, conversation.id) == STRATEGY_INCREMENTAL

    await service.repository.add_responses(conversation.id, [(f"late {index}", None) for index in range(10)])
    assert await choose_strategy(session, conversation.id) == STRATEGY_FULL


@pytest.mark.asyncio
async def test_run_job_executes_analysis_and_marks_success(session, seed_conversation, clustered_texts):
    conversation, _ = await seed_conversation(list(clustered_texts))
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    service = AnalysisService(session, FakeOpenAIService(clustered_texts), reducer=first_two_dims)

    assert await run_job(session, job.id, service=service) is True

    refreshed = await session.get(AnalysisJob, job.id)
    await session.refresh(refreshed)
    assert refreshed.status == AnalysisJobStatus.SUCCEEDED
    assert refreshed.locked_at is None
    state = await service.repository.load_state(conversation.id)
    assert state.status == AnalysisStatus.READY


@pytest.mark.asyncio
async def test_run_job_requeues_after_transient_failure(session, seed_conversation, clustered_texts):
    conversation, _ = await seed_conversation(list(clustered_texts))
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    service = AnalysisService(session, FakeOpenAIService(fail_embeddings=True), reducer=first_two_dims)

    with pytest.raises(Exception, match="quota exceeded"):
        await run_job(session, job.id, service=service)

    refreshed = await session.get(AnalysisJob, job.id)
    await session.refresh(refreshed)
    assert refreshed.status == AnalysisJobStatus.QUEUED
    assert refreshed.attempts == 1
    assert refreshed.locked_at is None
    assert "quota exceeded" in refreshed.last_error

    healthy = AnalysisService(session, FakeOpenAIService(clustered_texts), reducer=first_two_dims)
    assert await run_job(session, job.id, service=healthy) is True
    await session.refresh(refreshed)
    assert refreshed.status == AnalysisJobStatus.SUCCEEDED
    assert refreshed.attempts == 1


@pytest.mark.asyncio
async def test_run_job_fails_permanently_after_max_attempts(session, seed_conversation, clustered_texts):
    conversation, _ = await seed_conversation(list(clustered_texts))
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    service = AnalysisService(session, FakeOpenAIService(fail_embeddings=True), reducer=first_two_dims)
    settings = Settings(job_max_attempts=2)

    for _ in range(2):
        with pytest.raises(Exception, match="quota exceeded"):
            await run_job(session, job.id, service=service, settings=settings)

    refreshed = await session.get(AnalysisJob, job.id)
    await session.refresh(refreshed)
    assert refreshed.status == AnalysisJobStatus.FAILED
    assert refreshed.attempts == 2
    assert await run_job(session, job.id, service=service, settings=settings) is False


@pytest.mark.asyncio
async def test_transient_failure_through_drain_leaves_job_queued(session, seed_conversation, clustered_texts):
    conversation, _ = await seed_conversation(list(clustered_texts))
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)

    processed = await run_pending_jobs(session, openai_service=FakeOpenAIService(fail_embeddings=True))

    assert processed == 0
    refreshed = await session.get(AnalysisJob, job.id)
    await session.refresh(refreshed)
    assert refreshed.status == AnalysisJobStatus.QUEUED
    assert refreshed.attempts == 1


@pytest.mark.asyncio
async def test_drain_recovers_job_abandoned_by_dead_worker(session, seed_conversation):
    conversation, _ = await seed_conversation([])
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    job.status = AnalysisJobStatus.RUNNING
    job.locked_at = datetime.utcnow() - timedelta(hours=5)
    session.add(job)
    await session.commit()

    processed = await run_pending_jobs(session, openai_service=FakeOpenAIService())

    assert processed == 1
    await session.refresh(job)
    assert job.status == AnalysisJobStatus.SUCCEEDED
    again = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    assert again.id != job.id
    assert again.status == AnalysisJobStatus.QUEUED


@pytest.mark.asyncio
async def test_drain_skips_running_job_with_fresh_lock(session, seed_conversation):
    conversation, _ = await seed_conversation([])
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    assert await claim_job(session, job.id)

    assert await run_pending_jobs(session, openai_service=FakeOpenAIService()) == 0
    await session.refresh(job)
    assert job.status == AnalysisJobStatus.RUNNING


@pytest.mark.asyncio
async def test_run_job_does_nothing_when_claim_fails(session, seed_conversation):
    conversation, _ = await seed_conversation(["one"])
    job = await enqueue_analysis(session, conversation.id, STRATEGY_FULL)
    assert await claim_job(session, job.id)
    fake = FakeOpenAIService()
    service = AnalysisService(session, fake, reducer=first_two_dims)

    assert await run_job(session, job.id, service=service) is False
    assert fake.embed_payloads == []


@pytest.mark.asyncio
async def test_run_pending_jobs_drains_queue(session, seed_conversation):
    conversation, _ = await seed_conversation([])
    await enqueue_analysis(session, conversation.id, STRATEGY_FULL)

    processed = await run_pending_jobs(session, openai_service=FakeOpenAIService())

    assert processed == 1
    state = await AnalysisService(session, FakeOpenAIService()).repository.load_state(conversation.id)
    assert state.status == AnalysisStatus.READY
