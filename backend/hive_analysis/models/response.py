"""Conversation response ORM model.

Classes:
    ConversationResponse: A submitted text item plus the analysis-derived placement fields.

`cluster_index` uses the storage encoding: `None` for never analysed, `-1` for
the misc bucket, otherwise the cluster number.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel


class ConversationResponse(SQLModel, table=True):
    __tablename__ = "conversation_responses"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    user_id: Optional[UUID] = None
    text: str = Field(sa_column=Column(Text, nullable=False))
    tag: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    cluster_index: Optional[int] = Field(default=None, index=True)
    x_umap: Optional[float] = None
    y_umap: Optional[float] = None
    distance_to_centroid: Optional[float] = None
    outlier_score: Optional[float] = None
    is_misc: bool = Field(default=False)
