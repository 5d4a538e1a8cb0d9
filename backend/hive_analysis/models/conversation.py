"""Conversation ORM model.

Classes:
    Conversation: A hive conversation plus the persisted state of its analysis runs.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text, event
from sqlmodel import Field, SQLModel


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    hive_id: Optional[UUID] = Field(default=None, index=True)
    title: str
    type: str = Field(default="understand")
    analysis_status: str = Field(default="not_started")
    analysis_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    analysis_response_count: Optional[int] = None
    analysis_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


@event.listens_for(Conversation, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
