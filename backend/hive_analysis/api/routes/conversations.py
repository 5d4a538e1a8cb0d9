"""Conversation analysis endpoints.

Endpoints:
    get_analysis_status(conversation_id, session): Current analysis state and staleness.
    trigger_analysis(conversation_id, payload, session): Decide on a strategy and queue an analysis job.
    list_themes(conversation_id, session): Persisted themes, misc last.

Analysis itself runs in the job worker, never inside a request.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from hive_analysis.core.config import get_settings
from hive_analysis.db.session import get_session
from hive_analysis.schemas import (
    AnalysisStatusResponse,
    ThemeResource,
    TriggerAnalysisRequest,
    TriggerAnalysisResponse,
)
from hive_analysis.services.clustering import ClusterAssignment
from hive_analysis.services.jobs import choose_strategy, enqueue_analysis
from hive_analysis.services.repository import AnalysisRepository
from hive_analysis.services.state import AnalysisStatus

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _raise_for(exc: ValueError) -> None:
    detail = str(exc)
    if "not found" in detail.lower():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc


@router.get("/{conversation_id}/analysis-status", response_model=AnalysisStatusResponse)
async def get_analysis_status(
    conversation_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> AnalysisStatusResponse:
    repository = AnalysisRepository(session)
    try:
        state = await repository.load_state(conversation_id)
    except ValueError as exc:
        _raise_for(exc)
    response_count = await repository.count_responses(conversation_id)
    return AnalysisStatusResponse(
        conversation_id=conversation_id,
        analysis_status=state.status,
        analysis_error=state.error,
        analysis_updated_at=state.updated_at,
        analysis_response_count=state.response_count,
        response_count=response_count,
        threshold=get_settings().analysis_min_responses,
        new_responses=state.staleness(response_count),
    )


@router.post("/{conversation_id}/analyze", response_model=TriggerAnalysisResponse)
async def trigger_analysis(
    conversation_id: UUID,
    payload: TriggerAnalysisRequest | None = Body(default=None),
    session: AsyncSession = Depends(get_session),
) -> TriggerAnalysisResponse:
    settings = get_settings()
    repository = AnalysisRepository(session)
    requested = payload.strategy if payload else None
    try:
        state = await repository.load_state(conversation_id)
        response_count = await repository.count_responses(conversation_id)
        if response_count < settings.analysis_min_responses:
            return TriggerAnalysisResponse(status="already_complete", reason="below_threshold")
        if requested is None and state.status == AnalysisStatus.READY and state.staleness(response_count) == 0:
            return TriggerAnalysisResponse(status="already_complete", reason="fresh")

        strategy = requested or await choose_strategy(session, conversation_id, settings=settings)
        job = await enqueue_analysis(session, conversation_id, strategy)
    except ValueError as exc:
        _raise_for(exc)
    return TriggerAnalysisResponse(status="queued", job_id=job.id, strategy=job.strategy)


@router.get("/{conversation_id}/themes", response_model=list[ThemeResource])
async def list_themes(
    conversation_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> list[ThemeResource]:
    repository = AnalysisRepository(session)
    try:
        await repository.get_conversation(conversation_id)
    except ValueError as exc:
        _raise_for(exc)
    themes = await repository.list_themes(conversation_id)
    resources: list[ThemeResource] = []
    for theme in themes:
        assignment = ClusterAssignment.from_storage(theme.cluster_index)
        resources.append(
            ThemeResource(
                cluster_index=assignment.index,
                is_misc=assignment.is_misc,
                name=theme.name,
                description=theme.description,
                size=theme.size,
            )
        )
    return resources
