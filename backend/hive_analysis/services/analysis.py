"""Full and incremental conversation analysis.

Classes:
    AnalysisService: Runs the embedding, projection, clustering, floor enforcement, outlier, and persistence
        pipeline for one conversation, either from scratch or against existing cluster models.

Every run threads an explicit `AnalysisState` through its steps and persists it
after each transition. Any failure records the message with status `error` and
re-raises; retrying is the caller's concern.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional, Sequence
from uuid import UUID

import numpy as np

from hive_analysis.core.config import Settings, get_settings
from hive_analysis.core.errors import EmbeddingGenerationError, MissingClusterModelsError
from hive_analysis.models import ConversationResponse
from hive_analysis.services.clustering import (
    MISC,
    ClusterAssignment,
    cluster_embeddings,
    cluster_sizes,
    compute_centroids,
    cosine_distances_to,
    normalize_embeddings,
    relabel_by_size,
    to_assignments,
)
from hive_analysis.services.enforcement import enforce_min_clusters
from hive_analysis.services.grouping import GroupCandidate, group_responses_by_similarity
from hive_analysis.services.openai_client import OpenAIService, sample_diverse_texts
from hive_analysis.services.outliers import (
    compute_mad_z_scores,
    compute_outlier_scores,
    detect_outliers,
    detect_outliers_per_cluster,
)
from hive_analysis.services.projection import ProjectionResult, reduce_to_2d
from hive_analysis.services.repository import AnalysisRepository, ClusterModelRecord, ResponseUpdate
from hive_analysis.services.state import AnalysisState, AnalysisStatus
from hive_analysis.utils.text import normalise_for_embedding

Reducer = Callable[[np.ndarray], "ProjectionResult | np.ndarray"]

_LOGGER = logging.getLogger(__name__)


class AnalysisService:
    def __init__(
        self,
        session,
        openai_service: OpenAIService | None = None,
        *,
        reducer: Optional[Reducer] = None,
        rng: Optional[np.random.Generator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = AnalysisRepository(session)
        self._openai = openai_service or OpenAIService()
        self._reducer = reducer or self._default_reducer
        self._rng = rng or np.random.default_rng()

    @property
    def repository(self) -> AnalysisRepository:
        return self._repository

    def _default_reducer(self, embeddings: np.ndarray) -> ProjectionResult:
        return reduce_to_2d(
            embeddings,
            n_neighbors=self._settings.umap_n_neighbors,
            min_dist=self._settings.umap_min_dist,
            metric=self._settings.umap_metric,
            random_state=self._settings.umap_seed,
        )

    def _project(self, embeddings: np.ndarray) -> np.ndarray:
        result = self._reducer(embeddings)
        if isinstance(result, ProjectionResult):
            for warning in result.warnings:
                _LOGGER.warning("Projection warning: %s", warning)
            coords = result.coords_2d
        else:
            coords = result
        coords = np.asarray(coords, dtype=float)
        if coords.shape != (embeddings.shape[0], 2):
            raise ValueError(f"Reducer returned shape {coords.shape} for {embeddings.shape[0]} embeddings")
        return coords

    async def _transition(self, state: AnalysisState) -> AnalysisState:
        await self._repository.save_state(state)
        return state

    async def _record_failure(self, state: AnalysisState, exc: Exception) -> None:
        await self._repository.rollback()
        await self._repository.save_state(state.fail(str(exc)))

    async def _embed(self, conversation_id: UUID, responses: Sequence[ConversationResponse]) -> np.ndarray:
        texts = [normalise_for_embedding(response.text) for response in responses]
        batch = await self._openai.embed_texts(texts)
        if len(batch.vectors) != len(texts):
            raise EmbeddingGenerationError(f"Expected {len(texts)} embeddings, received {len(batch.vectors)}")
        embeddings = normalize_embeddings(batch.vectors)
        await self._repository.save_embeddings(
            conversation_id,
            [response.id for response in responses],
            embeddings,
            model=batch.model,
        )
        return embeddings

    async def run_full(self, conversation_id: UUID) -> AnalysisState:
        """Analyse every response of a conversation from scratch.

        Cluster models, themes, frequently mentioned groups, and consolidation
        buckets are replaced wholesale, so re-running is idempotent.
        """

        state = await self._repository.load_state(conversation_id)
        state = await self._transition(state.start())
        _LOGGER.info("Starting full analysis for conversation %s", conversation_id)

        try:
            fetched_at = datetime.utcnow()
            responses = await self._repository.list_responses(conversation_id)
            if not responses:
                _LOGGER.info("Conversation %s has no responses; nothing to analyse", conversation_id)
                return await self._transition(state.complete(0, at=fetched_at))

            count = len(responses)
            _LOGGER.info("Embedding %d responses for conversation %s", count, conversation_id)
            embeddings = await self._embed(conversation_id, responses)

            state = await self._transition(state.advance(AnalysisStatus.ANALYZING))
            coords = self._project(embeddings)

            labels = cluster_embeddings(
                embeddings,
                min_cluster_size=self._settings.kmeans_min_cluster_size,
                max_clusters=self._settings.kmeans_max_clusters,
                seed=self._settings.kmeans_seed,
            )
            labels = relabel_by_size(labels)
            _LOGGER.info("Initial clustering: %s", cluster_sizes(labels))

            enforcement = enforce_min_clusters(embeddings, labels, count, settings=self._settings)
            labels = enforcement.labels
            _LOGGER.info(
                "Cluster floor: target=%d effective=%d final=%d splits=%d reason=%s",
                enforcement.target_min_clusters,
                enforcement.effective_min_clusters,
                enforcement.final_cluster_count,
                enforcement.splits_performed,
                enforcement.reason,
            )

            distances = self._distances_to_centroids(embeddings, labels)
            scores = compute_outlier_scores(
                labels,
                distances,
                min_cluster_size=self._settings.outlier_min_cluster_size,
            )
            flagged = detect_outliers_per_cluster(
                labels,
                distances,
                threshold=self._settings.outlier_z_threshold,
                min_cluster_size=self._settings.outlier_min_cluster_size,
                max_outlier_ratio=self._settings.outlier_max_ratio,
            )
            misc_mask = np.zeros(count, dtype=bool)
            for positions in flagged.values():
                misc_mask[list(positions)] = True
            misc_count = int(misc_mask.sum())
            labels = relabel_by_size(labels, misc_mask)
            _LOGGER.info("Flagged %d outliers across %d clusters", misc_count, len(flagged))

            assignments = to_assignments(labels, misc_mask)
            updates = [
                ResponseUpdate(
                    response_id=response.id,
                    assignment=assignment,
                    x=float(coords[position, 0]),
                    y=float(coords[position, 1]),
                    distance_to_centroid=float(distances[position]),
                    outlier_score=scores[position],
                )
                for position, (response, assignment) in enumerate(zip(responses, assignments))
            ]
            await self._repository.apply_response_updates(updates, batch_size=self._settings.persist_batch_size)

            models = self._build_cluster_models(embeddings, coords, labels, misc_mask)
            await self._repository.replace_cluster_models(conversation_id, models)

            await self._persist_themes(conversation_id, responses, labels, misc_mask, misc_count)
            await self._persist_groups(conversation_id, responses, embeddings, assignments)
            await self._consolidate(conversation_id, responses, labels, misc_mask)

            state = await self._transition(state.complete(count, at=fetched_at))
            _LOGGER.info(
                "Full analysis complete for conversation %s: %d responses, %d clusters, %d misc",
                conversation_id,
                count,
                len(models),
                misc_count,
            )
            return state
        except Exception as exc:
            _LOGGER.exception("Full analysis failed for conversation %s", conversation_id)
            await self._record_failure(state, exc)
            raise

    async def run_incremental(self, conversation_id: UUID) -> AnalysisState:
        """Place responses that arrived since the last analysis onto the existing cluster models.

        Centroids and spread radii are read-only here; only member counts and
        theme sizes are refreshed.
        """

        state = await self._repository.load_state(conversation_id)
        baseline = state.updated_at
        state = await self._transition(state.start())
        _LOGGER.info("Starting incremental analysis for conversation %s (baseline %s)", conversation_id, baseline)

        try:
            fetched_at = datetime.utcnow()
            new_responses = await self._repository.list_new_responses(conversation_id, baseline)
            if not new_responses:
                total = await self._repository.count_responses(conversation_id)
                _LOGGER.info("No new responses for conversation %s", conversation_id)
                return await self._transition(state.complete(total, at=fetched_at))

            models = await self._repository.list_cluster_models(conversation_id)
            if not models:
                raise MissingClusterModelsError(conversation_id)
            existing_sizes, _ = await self._repository.count_cluster_members(conversation_id)

            _LOGGER.info("Embedding %d new responses for conversation %s", len(new_responses), conversation_id)
            embeddings = await self._embed(conversation_id, new_responses)

            state = await self._transition(state.advance(AnalysisStatus.ANALYZING))

            nearest, distances = self._assign_to_nearest(embeddings, models)
            assignments: list[ClusterAssignment] = [
                ClusterAssignment.numbered(models[slot].cluster_index) for slot in nearest
            ]
            scores: list[Optional[float]] = [None] * len(new_responses)

            by_cluster: dict[int, list[int]] = defaultdict(list)
            for position, slot in enumerate(nearest):
                by_cluster[int(slot)].append(position)

            misc_added = 0
            for slot, positions in by_cluster.items():
                cluster_index = models[slot].cluster_index
                population = existing_sizes.get(cluster_index, 0) + len(positions)
                cluster_distances = distances[positions]
                flags = detect_outliers(
                    cluster_distances,
                    threshold=self._settings.outlier_z_threshold,
                    min_cluster_size=self._settings.outlier_min_cluster_size,
                    max_outlier_ratio=self._settings.outlier_max_ratio,
                    population_size=population,
                )
                if population >= self._settings.outlier_min_cluster_size:
                    for position, score in zip(positions, compute_mad_z_scores(cluster_distances)):
                        scores[position] = float(score)
                for offset in np.flatnonzero(flags):
                    assignments[positions[int(offset)]] = MISC
                    misc_added += 1

            updates: list[ResponseUpdate] = []
            for position, response in enumerate(new_responses):
                assignment = assignments[position]
                x, y = self._place(assignment, models[int(nearest[position])])
                updates.append(
                    ResponseUpdate(
                        response_id=response.id,
                        assignment=assignment,
                        x=x,
                        y=y,
                        distance_to_centroid=float(distances[position]),
                        outlier_score=scores[position],
                    )
                )
            await self._repository.apply_response_updates(updates, batch_size=self._settings.persist_batch_size)

            sizes, misc_count = await self._repository.count_cluster_members(conversation_id)
            await self._repository.refresh_cluster_member_counts(conversation_id, sizes)
            await self._repository.update_theme_sizes(conversation_id, sizes, misc_count=misc_count)

            total = await self._repository.count_responses(conversation_id)
            state = await self._transition(state.complete(total, at=fetched_at))
            _LOGGER.info(
                "Incremental analysis complete for conversation %s: %d new, %d to misc, %d total",
                conversation_id,
                len(new_responses),
                misc_added,
                total,
            )
            return state
        except Exception as exc:
            _LOGGER.exception("Incremental analysis failed for conversation %s", conversation_id)
            await self._record_failure(state, exc)
            raise

    def _distances_to_centroids(self, embeddings: np.ndarray, labels: np.ndarray) -> np.ndarray:
        distances = np.zeros(embeddings.shape[0], dtype=float)
        for label, centroid in compute_centroids(embeddings, labels).items():
            members = np.flatnonzero(labels == label)
            distances[members] = cosine_distances_to(embeddings[members], centroid)
        return distances

    def _build_cluster_models(
        self,
        embeddings: np.ndarray,
        coords: np.ndarray,
        labels: np.ndarray,
        misc_mask: np.ndarray,
    ) -> list[ClusterModelRecord]:
        records: list[ClusterModelRecord] = []
        for label, centroid in compute_centroids(embeddings, labels, misc_mask).items():
            members = np.flatnonzero((labels == label) & ~misc_mask)
            points = coords[members]
            centre = points.mean(axis=0)
            max_distance = float(np.max(np.linalg.norm(points - centre, axis=1)))
            spread = max_distance * self._settings.spread_radius_padding
            if spread <= 0:
                spread = self._settings.spread_radius_floor
            records.append(
                ClusterModelRecord(
                    cluster_index=int(label),
                    centroid=centroid,
                    centroid_x=float(centre[0]),
                    centroid_y=float(centre[1]),
                    spread_radius=spread,
                    member_count=int(members.size),
                )
            )
        return records

    def _assign_to_nearest(
        self,
        embeddings: np.ndarray,
        models: Sequence[ClusterModelRecord],
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return (model slot, cosine distance) per embedding; ties go to the lowest cluster index."""

        table = np.column_stack([cosine_distances_to(embeddings, model.centroid) for model in models])
        nearest = np.argmin(table, axis=1)
        return nearest, table[np.arange(embeddings.shape[0]), nearest]

    def _place(self, assignment: ClusterAssignment, model: ClusterModelRecord) -> tuple[float, float]:
        angle = self._rng.uniform(0.0, 2.0 * math.pi)
        if assignment.is_misc:
            radius = self._rng.uniform(0.0, self._settings.misc_jitter_radius)
            return radius * math.cos(angle), radius * math.sin(angle)
        radius = self._rng.uniform(0.0, model.spread_radius)
        return model.centroid_x + radius * math.cos(angle), model.centroid_y + radius * math.sin(angle)

    async def _persist_themes(
        self,
        conversation_id: UUID,
        responses: Sequence[ConversationResponse],
        labels: np.ndarray,
        misc_mask: np.ndarray,
        misc_count: int,
    ) -> None:
        sizes = cluster_sizes(labels, misc_mask)
        samples: dict[int, list[str]] = {}
        for label in sorted(sizes):
            members = np.flatnonzero((labels == label) & ~misc_mask)
            texts = [responses[int(position)].text for position in members]
            samples[label] = sample_diverse_texts(texts, self._settings.theme_sample_size)

        drafts = await self._openai.generate_themes(samples, sizes)
        for draft in drafts:
            draft.size = sizes.get(draft.cluster_index, draft.size)
        await self._repository.replace_themes(conversation_id, drafts, misc_count=misc_count)

    async def _persist_groups(
        self,
        conversation_id: UUID,
        responses: Sequence[ConversationResponse],
        embeddings: np.ndarray,
        assignments: Sequence[ClusterAssignment],
    ) -> None:
        candidates = [
            GroupCandidate(response_id=response.id, assignment=assignment, embedding=embeddings[position])
            for position, (response, assignment) in enumerate(zip(responses, assignments))
        ]
        groups = group_responses_by_similarity(
            candidates,
            threshold=self._settings.grouping_similarity_threshold,
            min_group_size=self._settings.grouping_min_group_size,
        )
        await self._repository.replace_response_groups(
            conversation_id,
            groups,
            similarity_threshold=self._settings.grouping_similarity_threshold,
            algorithm_version=self._settings.grouping_algorithm_version,
        )
        _LOGGER.info("Stored %d frequently mentioned groups", len(groups))

    async def _consolidate(
        self,
        conversation_id: UUID,
        responses: Sequence[ConversationResponse],
        labels: np.ndarray,
        misc_mask: np.ndarray,
    ) -> None:
        if not self._settings.enable_consolidation:
            return
        clusters: dict[int, list[tuple[UUID, str]]] = defaultdict(list)
        for position, response in enumerate(responses):
            if not misc_mask[position]:
                clusters[int(labels[position])].append((response.id, response.text))
        try:
            consolidations = await self._openai.consolidate_clusters(dict(sorted(clusters.items())))
            await self._repository.replace_consolidations(conversation_id, consolidations)
        except Exception:
            # consolidation is optional; the analysis itself has already been saved
            _LOGGER.exception("Cluster consolidation failed for conversation %s", conversation_id)
            await self._repository.rollback()
