"""Async OpenAI client wrapper and related value objects.

Classes:
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    ThemeDraft: Name and description proposed for one cluster.
    SemanticBucket: A group of responses inside a cluster with its consolidated statement.
    ClusterConsolidation: Buckets and leftover responses for one cluster.
    OpenAIService: Handles embeddings, theme labelling, and cluster consolidation with retry semantics.

Functions:
    sample_diverse_texts(texts, max_samples): Evenly spaced sample in submission order.
    parse_consolidation_payload(cluster_index, payload, responses): Validate a consolidation reply against its input.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence
from uuid import UUID

from openai import AsyncOpenAI
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from hive_analysis.core.config import get_settings
from hive_analysis.core.errors import EmbeddingGenerationError

THEME_SYSTEM_PROMPT = "You are a helpful assistant that analyzes user feedback and identifies themes."
THEME_PROMPT = (
    "Analyze these user responses and create a concise theme:\n\n"
    "Responses:\n{responses}\n\n"
    "Generate:\n"
    "1. A short theme name (2-5 words)\n"
    "2. A brief description (1-2 sentences) explaining the common thread\n\n"
    'Respond in JSON format: {{"name": "Theme Name", "description": "Brief description of the theme"}}'
)
CONSOLIDATION_SYSTEM_PROMPT = (
    "You are an expert at analyzing user feedback and identifying common themes. "
    "Group similar responses into semantic buckets based on the core idea they express, "
    "write a consolidated statement for each bucket that keeps every distinct point, "
    "and map response IDs to buckets exactly. A response belongs to ONE bucket. "
    "Do NOT add opinions or information not present in the responses. "
    "Match the voice and tense of the originals and keep statements as short as the originals allow. "
    'Responses that fit no group go in "unconsolidated_ids".'
)
CONSOLIDATION_PROMPT = (
    "Analyze these {count} user responses and group them into semantic buckets.\n\n"
    "Each response has a unique ID shown as [ID: ...]. Use these EXACT IDs; never invent or modify them.\n\n"
    "Responses to analyze:\n{responses}\n\n"
    "Respond in JSON format:\n"
    '{{"buckets": [{{"bucket_name": "Short descriptive name (2-5 words)", '
    '"consolidated_statement": "A clear statement capturing all points", '
    '"response_ids": ["exact-id", "..."]}}], "unconsolidated_ids": ["exact-id"]}}\n\n'
    "Every response ID must appear exactly once, either in a bucket or in unconsolidated_ids."
)

FALLBACK_BUCKET_NAME = "Uncategorized"
SINGLE_RESPONSE_BUCKET_NAME = "Single response"

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None
    provider: str = "openai"


@dataclass(slots=True)
class ThemeDraft:
    cluster_index: int
    name: str
    description: str
    size: int


@dataclass(slots=True)
class SemanticBucket:
    name: str
    statement: str
    response_ids: list[UUID]


@dataclass(slots=True)
class ClusterConsolidation:
    cluster_index: int
    buckets: list[SemanticBucket] = field(default_factory=list)
    unconsolidated_ids: list[UUID] = field(default_factory=list)
    model: Optional[str] = None
    prompt_version: Optional[str] = None


def sample_diverse_texts(texts: Sequence[str], max_samples: int) -> list[str]:
    """Pick up to `max_samples` texts evenly spaced across submission order."""

    if max_samples <= 0:
        return []
    if len(texts) <= max_samples:
        return list(texts)
    step = len(texts) / max_samples
    return [texts[int(position * step)] for position in range(max_samples)]


def fallback_theme(cluster_index: int, size: int) -> ThemeDraft:
    return ThemeDraft(
        cluster_index=cluster_index,
        name=f"Theme {cluster_index + 1}",
        description=f"{size} related responses",
        size=size,
    )


def fallback_consolidation(cluster_index: int, responses: Sequence[tuple[UUID, str]]) -> ClusterConsolidation:
    return ClusterConsolidation(
        cluster_index=cluster_index,
        buckets=[
            SemanticBucket(name=FALLBACK_BUCKET_NAME, statement=text, response_ids=[response_id])
            for response_id, text in responses
        ],
    )


def parse_consolidation_payload(
    cluster_index: int,
    payload: Any,
    responses: Sequence[tuple[UUID, str]],
) -> ClusterConsolidation:
    """Keep only ids that were sent; ids the model dropped become unconsolidated."""

    if not isinstance(payload, Mapping):
        return fallback_consolidation(cluster_index, responses)

    valid = {str(response_id): response_id for response_id, _ in responses}
    seen: set[str] = set()
    result = ClusterConsolidation(cluster_index=cluster_index)

    for bucket in payload.get("buckets") or []:
        if not isinstance(bucket, Mapping):
            continue
        name = bucket.get("bucket_name")
        statement = bucket.get("consolidated_statement")
        raw_ids = bucket.get("response_ids")
        if not isinstance(name, str) or not isinstance(statement, str) or not isinstance(raw_ids, list):
            continue
        member_ids: list[UUID] = []
        for raw in raw_ids:
            key = str(raw)
            if key in valid and key not in seen:
                seen.add(key)
                member_ids.append(valid[key])
        if member_ids:
            result.buckets.append(SemanticBucket(name=name, statement=statement, response_ids=member_ids))

    for raw in payload.get("unconsolidated_ids") or []:
        key = str(raw)
        if key in valid and key not in seen:
            seen.add(key)
            result.unconsolidated_ids.append(valid[key])

    for key, response_id in valid.items():
        if key not in seen:
            result.unconsolidated_ids.append(response_id)
    return result


class OpenAIService:
    def __init__(self, client: Optional[AsyncOpenAI] = None) -> None:
        settings = get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key)
        else:
            self._client = None
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def embed_texts(
        self,
        texts: Iterable[str],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingBatch:
        docs = list(texts)
        chosen_model = model or self._settings.openai_embedding_model
        if not docs:
            return EmbeddingBatch(vectors=[], model=chosen_model, dim=0)
        if self._client is None:
            raise EmbeddingGenerationError("OpenAI client not configured. Set OPENAI_API_KEY.")

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None
        batch_size = max(1, self._settings.embedding_batch_size)

        for batch_number, start in enumerate(range(0, len(docs), batch_size), start=1):
            chunk = docs[start : start + batch_size]
            payload = dict(model=chosen_model, input=chunk)
            try:
                response = await _retry_embeddings(self._client, payload)
            except RetryError as exc:
                original = exc.last_attempt.exception()
                raise EmbeddingGenerationError(
                    f"Embedding batch {batch_number} failed: {original}",
                    batch_number=batch_number,
                ) from original
            except Exception as exc:
                raise EmbeddingGenerationError(
                    f"Embedding batch {batch_number} failed: {exc}",
                    batch_number=batch_number,
                ) from exc

            chunk_vectors = [item.embedding for item in response.data]
            if len(chunk_vectors) != len(chunk):
                raise EmbeddingGenerationError(
                    f"Embedding batch {batch_number} returned {len(chunk_vectors)} vectors for {len(chunk)} texts",
                    batch_number=batch_number,
                )
            vectors.extend(chunk_vectors)
            if not dim and chunk_vectors:
                dim = len(chunk_vectors[0])
            response_model = getattr(response, "model", None)
            if response_model:
                model_revision = response_model
            _LOGGER.debug("Embedded batch %d (%d texts)", batch_number, len(chunk))

        return EmbeddingBatch(
            vectors=vectors,
            model=chosen_model,
            dim=dim,
            model_revision=model_revision,
            provider="openai",
        )

    async def generate_themes(
        self,
        samples: Mapping[int, Sequence[str]],
        sizes: Mapping[int, int],
        *,
        model: Optional[str] = None,
    ) -> list[ThemeDraft]:
        """Label each cluster from its sampled texts, largest cluster first.

        A cluster whose request fails, or every cluster when no client is
        configured, receives the numbered fallback theme.
        """

        chosen_model = model or self._settings.openai_chat_model

        async def _label(cluster_index: int, texts: Sequence[str]) -> ThemeDraft:
            size = sizes.get(cluster_index, len(texts))
            if self._client is None or not texts:
                return fallback_theme(cluster_index, size)
            listing = "\n".join(f"{position + 1}. {text}" for position, text in enumerate(texts))
            payload = dict(
                model=chosen_model,
                messages=[
                    {"role": "system", "content": THEME_SYSTEM_PROMPT},
                    {"role": "user", "content": THEME_PROMPT.format(responses=listing)},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
            )
            try:
                response = await _retry_chat(self._client, payload)
                content = getattr(response.choices[0].message, "content", "") or ""
                data = json.loads(content)
            except Exception as exc:
                _LOGGER.warning("Theme generation failed for cluster %d: %s", cluster_index, exc)
                return fallback_theme(cluster_index, size)
            if not isinstance(data, dict):
                return fallback_theme(cluster_index, size)
            return ThemeDraft(
                cluster_index=cluster_index,
                name=str(data.get("name") or f"Theme {cluster_index + 1}"),
                description=str(data.get("description") or "A collection of related responses"),
                size=size,
            )

        drafts = await asyncio.gather(*[_label(index, texts) for index, texts in samples.items()])
        return sorted(drafts, key=lambda draft: (-draft.size, draft.cluster_index))

    async def consolidate_clusters(
        self,
        clusters: Mapping[int, Sequence[tuple[UUID, str]]],
        *,
        model: Optional[str] = None,
    ) -> list[ClusterConsolidation]:
        chosen_model = model or self._settings.openai_chat_model
        prompt_version = self._settings.consolidation_prompt_version
        results: list[ClusterConsolidation] = []
        for cluster_index, responses in clusters.items():
            result = await self._consolidate_cluster(cluster_index, list(responses), chosen_model)
            result.model = chosen_model
            result.prompt_version = prompt_version
            results.append(result)
        return results

    async def _consolidate_cluster(
        self,
        cluster_index: int,
        responses: list[tuple[UUID, str]],
        model: str,
    ) -> ClusterConsolidation:
        if not responses:
            return ClusterConsolidation(cluster_index=cluster_index)
        if len(responses) == 1:
            response_id, text = responses[0]
            return ClusterConsolidation(
                cluster_index=cluster_index,
                buckets=[SemanticBucket(name=SINGLE_RESPONSE_BUCKET_NAME, statement=text, response_ids=[response_id])],
            )
        if self._client is None:
            return fallback_consolidation(cluster_index, responses)

        batch = responses[: self._settings.consolidation_max_responses]
        listing = "\n".join(f'[ID: {response_id}] "{text}"' for response_id, text in batch)
        payload = dict(
            model=model,
            messages=[
                {"role": "system", "content": CONSOLIDATION_SYSTEM_PROMPT},
                {"role": "user", "content": CONSOLIDATION_PROMPT.format(count=len(batch), responses=listing)},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
        try:
            response = await _retry_chat(self._client, payload)
            content = getattr(response.choices[0].message, "content", "") or ""
            data = json.loads(content)
        except Exception as exc:
            _LOGGER.warning("Consolidation failed for cluster %d: %s", cluster_index, exc)
            return fallback_consolidation(cluster_index, responses)
        result = parse_consolidation_payload(cluster_index, data, batch)
        # responses beyond the per-call limit were never shown to the model
        result.unconsolidated_ids.extend(response_id for response_id, _ in responses[len(batch) :])
        return result


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(5))
async def _retry_chat(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.chat.completions.create(**payload)


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(5))
async def _retry_embeddings(client: AsyncOpenAI, payload: dict[str, Any]):
    fallback_model = get_settings().openai_embedding_fallback_model
    try:
        return await client.embeddings.create(**payload)
    except Exception:  # pragma: no cover - fallback executed infrequently
        retry_payload = {**payload, "model": fallback_model}
        return await client.embeddings.create(**retry_payload)
