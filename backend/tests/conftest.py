import hashlib
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Optional, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "")

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from hive_analysis.core.errors import EmbeddingGenerationError
from hive_analysis.db.session import get_session
from hive_analysis.main import app
from hive_analysis.models import Conversation, ConversationResponse
from hive_analysis.services.openai_client import (
    ClusterConsolidation,
    EmbeddingBatch,
    ThemeDraft,
    fallback_consolidation,
    fallback_theme,
)
from hive_analysis.services.projection import ProjectionResult

FAKE_DIM = 6


def _hashed_vector(text: str) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(byte / 255.0) - 0.5 for byte in digest[:FAKE_DIM]]


class FakeOpenAIService:
    def __init__(self, vectors: Optional[dict[str, Sequence[float]]] = None, *, fail_embeddings: bool = False) -> None:
        self.vectors = dict(vectors or {})
        self.fail_embeddings = fail_embeddings
        self.embed_payloads: list[list[str]] = []
        self.theme_requests: list[dict[int, list[str]]] = []
        self.consolidation_requests: list[dict[int, list]] = []

    @property
    def is_configured(self) -> bool:
        return False

    async def embed_texts(self, texts, **_: object) -> EmbeddingBatch:
        docs = list(texts)
        self.embed_payloads.append(docs)
        if self.fail_embeddings:
            raise EmbeddingGenerationError("Embedding batch 1 failed: quota exceeded", batch_number=1)
        vectors = [list(self.vectors.get(text, _hashed_vector(text))) for text in docs]
        return EmbeddingBatch(vectors=vectors, model="fake-embedding", dim=len(vectors[0]) if vectors else 0)

    async def generate_themes(self, samples, sizes, **_: object) -> list[ThemeDraft]:
        self.theme_requests.append({index: list(texts) for index, texts in samples.items()})
        drafts = [fallback_theme(index, sizes[index]) for index in samples]
        return sorted(drafts, key=lambda draft: -draft.size)

    async def consolidate_clusters(self, clusters, **_: object) -> list[ClusterConsolidation]:
        self.consolidation_requests.append({index: list(items) for index, items in clusters.items()})
        return [fallback_consolidation(index, items) for index, items in clusters.items()]


def axis_vector(axis: int, dim: int = FAKE_DIM) -> list[float]:
    vector = [0.0] * dim
    vector[axis] = 1.0
    return vector


def first_two_dims(embeddings: np.ndarray) -> ProjectionResult:
    return ProjectionResult(coords_2d=np.asarray(embeddings, dtype=float)[:, :2].copy(), method="test")


@pytest_asyncio.fixture()
async def session() -> AsyncGenerator[AsyncSession, None]:
    engine: AsyncEngine = create_async_engine("sqlite+aiosqlite:///:memory:", connect_args={"check_same_thread": False})
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def client(session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def clustered_texts() -> dict[str, list[float]]:
    """24 responses on three orthogonal directions with group sizes 10, 8, and 6."""

    vectors: dict[str, list[float]] = {}
    for group, (axis, size) in enumerate([(0, 10), (1, 8), (2, 6)]):
        for item in range(size):
            vectors[f"group {group} response {item}"] = axis_vector(axis)
    return vectors


@pytest.fixture()
def seed_conversation(session: AsyncSession) -> Callable[..., Awaitable[tuple[Conversation, list[ConversationResponse]]]]:
    async def _seed(texts: Sequence[str], *, title: str = "What should the hive focus on?"):
        conversation = Conversation(title=title)
        session.add(conversation)
        await session.commit()
        await session.refresh(conversation)

        start = datetime.utcnow() - timedelta(hours=1)
        responses = [
            ConversationResponse(conversation_id=conversation.id, text=text, created_at=start + timedelta(seconds=offset))
            for offset, text in enumerate(texts)
        ]
        session.add_all(responses)
        await session.commit()
        return conversation, responses

    return _seed
