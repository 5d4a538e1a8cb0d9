"""Theme ORM model.

Classes:
    ConversationTheme: Display metadata (name, description, size) for a cluster.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ConversationTheme(SQLModel, table=True):
    __tablename__ = "conversation_themes"
    __table_args__ = (
        UniqueConstraint("conversation_id", "cluster_index", name="uq_theme_conversation_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: UUID = Field(foreign_key="conversations.id", index=True)
    cluster_index: int
    name: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    size: int = 0
