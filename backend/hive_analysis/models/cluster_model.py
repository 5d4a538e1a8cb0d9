"""Cluster model persistence.

Classes:
    ClusterModel: Centroid and spread of one non-misc cluster, used to place incremental responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel


class ClusterModel(SQLModel, table=True):
    __tablename__ = "cluster_models"
    __table_args__ = (
        UniqueConstraint("conversation_id", "cluster_index", name="uq_cluster_model_conversation_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    cluster_index: int
    dim: int
    centroid_embedding: bytes = Field(sa_column=Column(LargeBinary))
    centroid_x_umap: float
    centroid_y_umap: float
    spread_radius: float
    member_count: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)
