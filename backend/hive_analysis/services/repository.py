"""Persistence operations used by the analysis orchestrators.

Classes:
    ResponseUpdate: Analysis-derived fields to write onto one response.
    ClusterModelRecord: Centroid, 2D centroid, and spread of one cluster.
    AnalysisRepository: Wraps an AsyncSession and implements every store operation the pipeline needs.

The repository is the only component aware of the storage encoding of the misc
bucket; callers work with `ClusterAssignment` values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from hive_analysis.core.errors import ConversationNotFoundError, PersistenceError
from hive_analysis.models import (
    ClusterBucket,
    ClusterBucketMember,
    ClusterModel,
    Conversation,
    ConversationResponse,
    ConversationTheme,
    ResponseEmbedding,
    ResponseGroup,
    ResponseGroupMember,
    UnconsolidatedResponse,
)
from hive_analysis.services.clustering import MISC_STORAGE_VALUE, ClusterAssignment
from hive_analysis.services.grouping import ResponseGroupDraft
from hive_analysis.services.openai_client import ClusterConsolidation, ThemeDraft
from hive_analysis.services.state import AnalysisState
from hive_analysis.utils.text import normalise_tag

MISC_THEME_NAME = "Misc"
MISC_THEME_DESCRIPTION = "Responses that don't fit well into other themes"

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ResponseUpdate:
    response_id: UUID
    assignment: ClusterAssignment
    x: float
    y: float
    distance_to_centroid: Optional[float] = None
    outlier_score: Optional[float] = None


@dataclass(slots=True)
class ClusterModelRecord:
    cluster_index: int
    centroid: np.ndarray
    centroid_x: float
    centroid_y: float
    spread_radius: float
    member_count: int


def _vector_to_bytes(vector: Sequence[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _vector_from_bytes(data: bytes, dim: int | None = None) -> np.ndarray:
    array = np.frombuffer(data, dtype=np.float32)
    if dim and array.size != dim:
        array = array[:dim]
    return array.astype(float)


class AnalysisRepository:
    def __init__(self, session) -> None:
        self._session = session

    @property
    def session(self):
        return self._session

    async def rollback(self) -> None:
        await self._session.rollback()

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self._session.get(Conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def load_state(self, conversation_id: UUID) -> AnalysisState:
        conversation = await self.get_conversation(conversation_id)
        return AnalysisState(
            conversation_id=conversation.id,
            status=conversation.analysis_status,
            error=conversation.analysis_error,
            response_count=conversation.analysis_response_count,
            updated_at=conversation.analysis_updated_at,
        )

    async def save_state(self, state: AnalysisState) -> None:
        conversation = await self.get_conversation(state.conversation_id)
        conversation.analysis_status = state.status
        conversation.analysis_error = state.error
        conversation.analysis_response_count = state.response_count
        conversation.analysis_updated_at = state.updated_at
        self._session.add(conversation)
        await self._session.commit()

    async def add_responses(
        self,
        conversation_id: UUID,
        items: Iterable[tuple[str, Optional[str]]],
        *,
        user_id: Optional[UUID] = None,
    ) -> list[ConversationResponse]:
        """Insert submitted responses; unrecognised tags are stored as None."""

        await self.get_conversation(conversation_id)
        records = [
            ConversationResponse(
                conversation_id=conversation_id,
                user_id=user_id,
                text=text,
                tag=normalise_tag(tag),
            )
            for text, tag in items
        ]
        self._session.add_all(records)
        await self._session.commit()
        return records

    async def list_responses(self, conversation_id: UUID) -> list[ConversationResponse]:
        result = await self._session.exec(
            select(ConversationResponse)
            .where(ConversationResponse.conversation_id == conversation_id)
            .order_by(ConversationResponse.created_at, ConversationResponse.id)
        )
        return list(result.scalars().all())

    async def list_new_responses(
        self,
        conversation_id: UUID,
        since: Optional[datetime],
    ) -> list[ConversationResponse]:
        """Responses created after `since`, or never analysed when no baseline exists."""

        stmt = select(ConversationResponse).where(ConversationResponse.conversation_id == conversation_id)
        if since is not None:
            stmt = stmt.where(ConversationResponse.created_at > since)
        else:
            stmt = stmt.where(ConversationResponse.cluster_index.is_(None))
        result = await self._session.exec(
            stmt.order_by(ConversationResponse.created_at, ConversationResponse.id)
        )
        return list(result.scalars().all())

    async def count_responses(self, conversation_id: UUID) -> int:
        result = await self._session.exec(
            select(func.count())
            .select_from(ConversationResponse)
            .where(ConversationResponse.conversation_id == conversation_id)
        )
        return int(result.scalar_one())

    async def count_cluster_members(self, conversation_id: UUID) -> tuple[dict[int, int], int]:
        """Return (non-misc sizes keyed by cluster index, misc count) from current assignments."""

        result = await self._session.exec(
            select(ConversationResponse.cluster_index, func.count())
            .where(
                ConversationResponse.conversation_id == conversation_id,
                ConversationResponse.cluster_index.is_not(None),
            )
            .group_by(ConversationResponse.cluster_index)
        )
        sizes: dict[int, int] = {}
        misc_count = 0
        for raw_index, count in result.all():
            assignment = ClusterAssignment.from_storage(raw_index)
            if assignment.is_misc:
                misc_count = int(count)
            else:
                sizes[int(assignment.index)] = int(count)
        return sizes, misc_count

    async def save_embeddings(
        self,
        conversation_id: UUID,
        response_ids: Sequence[UUID],
        vectors: np.ndarray,
        *,
        model: str,
    ) -> None:
        if not response_ids:
            return
        await self._session.execute(
            delete(ResponseEmbedding).where(ResponseEmbedding.response_id.in_(list(response_ids)))
        )
        entries = [
            ResponseEmbedding(
                response_id=response_id,
                conversation_id=conversation_id,
                model=model,
                dim=int(len(vector)),
                vector=_vector_to_bytes(vector),
            )
            for response_id, vector in zip(response_ids, vectors, strict=True)
        ]
        self._session.add_all(entries)
        await self._session.commit()

    async def apply_response_updates(
        self,
        updates: Sequence[ResponseUpdate],
        *,
        batch_size: int = 100,
    ) -> None:
        """Write analysis fields in batches, committing once per batch.

        A failure aborts immediately; earlier batches stay committed.
        """

        size = max(1, batch_size)
        total = len(updates)
        for start in range(0, total, size):
            batch = updates[start : start + size]
            ids = [update.response_id for update in batch]
            result = await self._session.exec(
                select(ConversationResponse).where(ConversationResponse.id.in_(ids))
            )
            rows = {row.id: row for row in result.scalars().all()}
            for update in batch:
                row = rows.get(update.response_id)
                if row is None:
                    raise PersistenceError(
                        f"Response {update.response_id} not found while saving analysis results",
                        response_id=update.response_id,
                    )
                row.cluster_index = update.assignment.to_storage()
                row.is_misc = update.assignment.is_misc
                row.x_umap = float(update.x)
                row.y_umap = float(update.y)
                row.distance_to_centroid = update.distance_to_centroid
                row.outlier_score = update.outlier_score
                self._session.add(row)
            try:
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                raise PersistenceError(
                    f"Failed to save analysis results for batch starting at response {ids[0]}: {exc}",
                    response_id=ids[0],
                ) from exc
            _LOGGER.info("Persisted %d/%d response updates", min(start + size, total), total)

    async def list_cluster_models(self, conversation_id: UUID) -> list[ClusterModelRecord]:
        result = await self._session.exec(
            select(ClusterModel)
            .where(ClusterModel.conversation_id == conversation_id)
            .order_by(ClusterModel.cluster_index)
        )
        return [
            ClusterModelRecord(
                cluster_index=row.cluster_index,
                centroid=_vector_from_bytes(row.centroid_embedding, row.dim),
                centroid_x=row.centroid_x_umap,
                centroid_y=row.centroid_y_umap,
                spread_radius=row.spread_radius,
                member_count=row.member_count,
            )
            for row in result.scalars().all()
        ]

    async def has_cluster_models(self, conversation_id: UUID) -> bool:
        result = await self._session.exec(
            select(func.count())
            .select_from(ClusterModel)
            .where(ClusterModel.conversation_id == conversation_id)
        )
        return int(result.scalar_one()) > 0

    async def replace_cluster_models(
        self,
        conversation_id: UUID,
        records: Sequence[ClusterModelRecord],
    ) -> None:
        await self._session.execute(delete(ClusterModel).where(ClusterModel.conversation_id == conversation_id))
        self._session.add_all(
            [
                ClusterModel(
                    conversation_id=conversation_id,
                    cluster_index=record.cluster_index,
                    dim=int(record.centroid.shape[0]),
                    centroid_embedding=_vector_to_bytes(record.centroid),
                    centroid_x_umap=float(record.centroid_x),
                    centroid_y_umap=float(record.centroid_y),
                    spread_radius=float(record.spread_radius),
                    member_count=int(record.member_count),
                )
                for record in records
            ]
        )
        await self._session.commit()

    async def refresh_cluster_member_counts(self, conversation_id: UUID, sizes: Mapping[int, int]) -> None:
        result = await self._session.exec(select(ClusterModel).where(ClusterModel.conversation_id == conversation_id))
        for row in result.scalars().all():
            row.member_count = int(sizes.get(row.cluster_index, 0))
            row.updated_at = datetime.utcnow()
            self._session.add(row)
        await self._session.commit()

    async def list_themes(self, conversation_id: UUID) -> list[ConversationTheme]:
        result = await self._session.exec(
            select(ConversationTheme)
            .where(ConversationTheme.conversation_id == conversation_id)
            .order_by(ConversationTheme.cluster_index)
        )
        themes = list(result.scalars().all())
        # misc sorts last
        return sorted(themes, key=lambda theme: (theme.cluster_index == MISC_STORAGE_VALUE, theme.cluster_index))

    async def replace_themes(
        self,
        conversation_id: UUID,
        drafts: Sequence[ThemeDraft],
        *,
        misc_count: int,
    ) -> None:
        await self._session.execute(
            delete(ConversationTheme).where(ConversationTheme.conversation_id == conversation_id)
        )
        rows = [
            ConversationTheme(
                conversation_id=conversation_id,
                cluster_index=draft.cluster_index,
                name=draft.name,
                description=draft.description,
                size=draft.size,
            )
            for draft in drafts
        ]
        if misc_count > 0:
            rows.append(self._misc_theme(conversation_id, misc_count))
        self._session.add_all(rows)
        await self._session.commit()

    async def update_theme_sizes(
        self,
        conversation_id: UUID,
        sizes: Mapping[int, int],
        *,
        misc_count: int,
    ) -> None:
        result = await self._session.exec(
            select(ConversationTheme).where(ConversationTheme.conversation_id == conversation_id)
        )
        misc_theme: ConversationTheme | None = None
        for theme in result.scalars().all():
            if theme.cluster_index == MISC_STORAGE_VALUE:
                misc_theme = theme
                continue
            theme.size = int(sizes.get(theme.cluster_index, 0))
            self._session.add(theme)

        if misc_theme is not None:
            misc_theme.size = misc_count
            self._session.add(misc_theme)
        elif misc_count > 0:
            self._session.add(self._misc_theme(conversation_id, misc_count))
        await self._session.commit()

    def _misc_theme(self, conversation_id: UUID, size: int) -> ConversationTheme:
        return ConversationTheme(
            conversation_id=conversation_id,
            cluster_index=MISC_STORAGE_VALUE,
            name=MISC_THEME_NAME,
            description=MISC_THEME_DESCRIPTION,
            size=size,
        )

    async def replace_response_groups(
        self,
        conversation_id: UUID,
        groups: Sequence[ResponseGroupDraft],
        *,
        similarity_threshold: float,
        algorithm_version: str,
    ) -> None:
        existing = select(ResponseGroup.id).where(ResponseGroup.conversation_id == conversation_id)
        await self._session.execute(delete(ResponseGroupMember).where(ResponseGroupMember.group_id.in_(existing)))
        await self._session.execute(delete(ResponseGroup).where(ResponseGroup.conversation_id == conversation_id))
        for draft in groups:
            group = ResponseGroup(
                conversation_id=conversation_id,
                cluster_index=draft.assignment.to_storage(),
                representative_id=draft.representative_id,
                size=draft.size,
                similarity_threshold=similarity_threshold,
                algorithm_version=algorithm_version,
            )
            self._session.add(group)
            self._session.add_all(
                [ResponseGroupMember(group_id=group.id, response_id=member_id) for member_id in draft.member_ids]
            )
        await self._session.commit()

    async def list_response_groups(self, conversation_id: UUID) -> list[ResponseGroup]:
        result = await self._session.exec(
            select(ResponseGroup).where(ResponseGroup.conversation_id == conversation_id)
        )
        return list(result.scalars().all())

    async def replace_consolidations(
        self,
        conversation_id: UUID,
        consolidations: Sequence[ClusterConsolidation],
    ) -> None:
        existing = select(ClusterBucket.id).where(ClusterBucket.conversation_id == conversation_id)
        await self._session.execute(delete(ClusterBucketMember).where(ClusterBucketMember.bucket_id.in_(existing)))
        await self._session.execute(delete(ClusterBucket).where(ClusterBucket.conversation_id == conversation_id))
        await self._session.execute(
            delete(UnconsolidatedResponse).where(UnconsolidatedResponse.conversation_id == conversation_id)
        )
        for consolidation in consolidations:
            for bucket_index, bucket in enumerate(consolidation.buckets):
                record = ClusterBucket(
                    conversation_id=conversation_id,
                    cluster_index=consolidation.cluster_index,
                    bucket_index=bucket_index,
                    bucket_name=bucket.name,
                    consolidated_statement=bucket.statement,
                    response_count=len(bucket.response_ids),
                    model_used=consolidation.model,
                    prompt_version=consolidation.prompt_version,
                )
                self._session.add(record)
                self._session.add_all(
                    [ClusterBucketMember(bucket_id=record.id, response_id=response_id) for response_id in bucket.response_ids]
                )
            self._session.add_all(
                [
                    UnconsolidatedResponse(
                        conversation_id=conversation_id,
                        cluster_index=consolidation.cluster_index,
                        response_id=response_id,
                    )
                    for response_id in consolidation.unconsolidated_ids
                ]
            )
        await self._session.commit()

    async def list_buckets(self, conversation_id: UUID) -> list[ClusterBucket]:
        result = await self._session.exec(
            select(ClusterBucket)
            .where(ClusterBucket.conversation_id == conversation_id)
            .order_by(ClusterBucket.cluster_index, ClusterBucket.bucket_index)
        )
        return list(result.scalars().all())
