"""Pydantic schemas for conversation analysis payloads.

Classes:
    AnalysisStatusResponse: Current analysis state of a conversation.
    TriggerAnalysisRequest, TriggerAnalysisResponse: Request and outcome of an analysis trigger.
    ThemeResource: A persisted theme as returned to clients.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel


class AnalysisStatusResponse(BaseModel):
    conversation_id: UUID
    analysis_status: str
    analysis_error: Optional[str] = None
    analysis_updated_at: Optional[datetime] = None
    analysis_response_count: Optional[int] = None
    response_count: int
    threshold: int
    new_responses: int


class TriggerAnalysisRequest(BaseModel):
    strategy: Optional[Literal["full", "incremental"]] = None


class TriggerAnalysisResponse(BaseModel):
    status: Literal["already_complete", "queued"]
    reason: Optional[Literal["below_threshold", "fresh"]] = None
    job_id: Optional[UUID] = None
    strategy: Optional[str] = None


class ThemeResource(BaseModel):
    cluster_index: Optional[int]
    is_misc: bool
    name: str
    description: Optional[str] = None
    size: int
