"""Cluster consolidation persistence models.

Classes:
    ClusterBucket: A semantic bucket inside a cluster with its consolidated statement.
    ClusterBucketMember: Link between a bucket and one of its responses.
    UnconsolidatedResponse: A clustered response that fit none of the cluster's buckets.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel


class ClusterBucket(SQLModel, table=True):
    __tablename__ = "cluster_buckets"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    cluster_index: int
    bucket_index: int
    bucket_name: str
    consolidated_statement: str = Field(sa_column=Column(Text, nullable=False))
    response_count: int = 0
    model_used: Optional[str] = None
    prompt_version: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ClusterBucketMember(SQLModel, table=True):
    __tablename__ = "cluster_bucket_members"

    bucket_id: UUID = Field(foreign_key="cluster_buckets.id", primary_key=True)
    response_id: UUID = Field(foreign_key="conversation_responses.id", primary_key=True)


class UnconsolidatedResponse(SQLModel, table=True):
    __tablename__ = "unconsolidated_responses"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    cluster_index: int
    response_id: UUID = Field(foreign_key="conversation_responses.id")
