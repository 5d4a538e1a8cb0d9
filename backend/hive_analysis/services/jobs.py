"""Analysis job queue: enqueueing, claiming, strategy selection, and execution.

Functions:
    choose_strategy(session, conversation_id): Decide between a full and an incremental run.
    enqueue_analysis(session, conversation_id, strategy): Queue a job, reusing an active one.
    claim_job(session, job_id): Compare-and-swap a job into `running`; False when someone else holds it.
    run_job(session, job_id, ...): Claim and execute a job, recording the outcome.
    run_pending_jobs(session, ...): Drain claimable jobs one at a time, including abandoned ones.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update

from hive_analysis.core.config import Settings, get_settings
from hive_analysis.models import AnalysisJob, AnalysisJobStatus
from hive_analysis.services.analysis import AnalysisService
from hive_analysis.services.openai_client import OpenAIService
from hive_analysis.services.repository import AnalysisRepository

STRATEGY_FULL = "full"
STRATEGY_INCREMENTAL = "incremental"
STRATEGIES = frozenset({STRATEGY_FULL, STRATEGY_INCREMENTAL})

_ACTIVE_STATUSES = (AnalysisJobStatus.QUEUED, AnalysisJobStatus.RUNNING)

_LOGGER = logging.getLogger(__name__)


def _claimable(now: datetime, settings: Settings):
    """Queued and unlocked, or running with no lock or a lock older than the TTL."""

    stale_before = now - timedelta(seconds=settings.job_lock_ttl_seconds)
    return and_(
        AnalysisJob.status.in_(_ACTIVE_STATUSES),
        or_(AnalysisJob.locked_at.is_(None), AnalysisJob.locked_at < stale_before),
    )


async def choose_strategy(
    session,
    conversation_id: UUID,
    *,
    settings: Settings | None = None,
) -> str:
    """Full when no cluster models exist or enough responses arrived since the last run."""

    settings = settings or get_settings()
    repository = AnalysisRepository(session)
    if not await repository.has_cluster_models(conversation_id):
        return STRATEGY_FULL
    state = await repository.load_state(conversation_id)
    new_count = state.staleness(await repository.count_responses(conversation_id))
    if new_count >= settings.incremental_threshold:
        return STRATEGY_FULL
    return STRATEGY_INCREMENTAL


async def enqueue_analysis(session, conversation_id: UUID, strategy: str) -> AnalysisJob:
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown analysis strategy '{strategy}'")
    await AnalysisRepository(session).get_conversation(conversation_id)

    result = await session.exec(
        select(AnalysisJob)
        .where(
            AnalysisJob.conversation_id == conversation_id,
            AnalysisJob.status.in_(_ACTIVE_STATUSES),
        )
        .order_by(AnalysisJob.created_at)
    )
    existing = result.scalars().first()
    if existing is not None:
        _LOGGER.info("Reusing active job %s for conversation %s", existing.id, conversation_id)
        return existing

    job = AnalysisJob(conversation_id=conversation_id, strategy=strategy)
    session.add(job)
    await session.commit()
    await session.refresh(job)
    _LOGGER.info("Queued %s analysis job %s for conversation %s", strategy, job.id, conversation_id)
    return job


async def claim_job(
    session,
    job_id: UUID,
    *,
    now: Optional[datetime] = None,
    settings: Settings | None = None,
) -> bool:
    """Move a job to `running` exactly once.

    A job is claimable while queued and unlocked, or when it is running without
    a lock or with a lock older than the TTL (its worker is presumed dead).
    """

    settings = settings or get_settings()
    now = now or datetime.utcnow()
    result = await session.execute(
        update(AnalysisJob)
        .where(AnalysisJob.id == job_id, _claimable(now, settings))
        .values(status=AnalysisJobStatus.RUNNING, locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    claimed = result.rowcount == 1
    if not claimed:
        _LOGGER.info("Job %s could not be claimed", job_id)
    return claimed


async def run_job(
    session,
    job_id: UUID,
    *,
    openai_service: OpenAIService | None = None,
    service: AnalysisService | None = None,
    settings: Settings | None = None,
) -> bool:
    """Run one job; returns False without running anything when the claim fails.

    A failed job goes back to `queued` until it has used `job_max_attempts`
    attempts, then stays `failed`. The error is re-raised either way.
    """

    settings = settings or get_settings()
    if not await claim_job(session, job_id, settings=settings):
        return False

    job = await session.get(AnalysisJob, job_id)
    await session.refresh(job)
    service = service or AnalysisService(session, openai_service, settings=settings)
    try:
        if job.strategy == STRATEGY_INCREMENTAL:
            await service.run_incremental(job.conversation_id)
        else:
            await service.run_full(job.conversation_id)
    except Exception as exc:
        await session.rollback()
        job = await session.get(AnalysisJob, job_id)
        job.attempts += 1
        job.last_error = str(exc)
        job.locked_at = None
        if job.attempts >= settings.job_max_attempts:
            job.status = AnalysisJobStatus.FAILED
            _LOGGER.error("Analysis job %s failed after %d attempts: %s", job_id, job.attempts, exc)
        else:
            job.status = AnalysisJobStatus.QUEUED
            _LOGGER.warning(
                "Analysis job %s failed (attempt %d/%d), re-queued: %s",
                job_id,
                job.attempts,
                settings.job_max_attempts,
                exc,
            )
        session.add(job)
        await session.commit()
        raise

    job.status = AnalysisJobStatus.SUCCEEDED
    job.last_error = None
    job.locked_at = None
    session.add(job)
    await session.commit()
    _LOGGER.info("Analysis job %s succeeded", job_id)
    return True


async def run_pending_jobs(
    session,
    *,
    openai_service: OpenAIService | None = None,
    limit: Optional[int] = None,
    settings: Settings | None = None,
) -> int:
    """Process claimable jobs oldest first, including running jobs whose worker died.

    Failures are recorded on the job and do not stop the drain.
    """

    settings = settings or get_settings()
    result = await session.exec(
        select(AnalysisJob.id)
        .where(_claimable(datetime.utcnow(), settings))
        .order_by(AnalysisJob.created_at)
    )
    job_ids = list(result.scalars().all())
    if limit is not None:
        job_ids = job_ids[:limit]

    processed = 0
    for job_id in job_ids:
        try:
            if await run_job(session, job_id, openai_service=openai_service, settings=settings):
                processed += 1
        except Exception:
            _LOGGER.warning("Continuing after failed job %s", job_id)
    return processed
