"""Analysis job ORM model.

Classes:
    AnalysisJobStatus: Simple enumeration of valid job lifecycle states.
    AnalysisJob: A queued unit of analysis work for one conversation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text, event
from sqlmodel import Field, SQLModel


class AnalysisJobStatus(str):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    strategy: str = Field(default="full")
    status: str = Field(default=AnalysisJobStatus.QUEUED, index=True)
    attempts: int = 0
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


@event.listens_for(AnalysisJob, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
