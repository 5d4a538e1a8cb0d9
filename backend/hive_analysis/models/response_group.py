"""Frequently mentioned group persistence models.

Classes:
    ResponseGroup: A set of near-duplicate responses inside one cluster.
    ResponseGroupMember: Link between a group and one of its responses.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel


class ResponseGroup(SQLModel, table=True):
    __tablename__ = "response_groups"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    cluster_index: int
    representative_id: UUID = Field(foreign_key="conversation_responses.id")
    size: int
    similarity_threshold: float
    algorithm_version: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ResponseGroupMember(SQLModel, table=True):
    __tablename__ = "response_group_members"

    group_id: UUID = Field(foreign_key="response_groups.id", primary_key=True)
    response_id: UUID = Field(foreign_key="conversation_responses.id", primary_key=True)
