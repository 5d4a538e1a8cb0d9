"""Frequently mentioned groups of near-duplicate responses inside a cluster.

Classes:
    GroupCandidate: One response with its embedding and cluster assignment.
    ResponseGroupDraft: A connected component of similar responses with its representative.

Functions:
    group_responses_by_similarity(candidates, ...): Group near-duplicates per cluster via connected components.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from hive_analysis.services.clustering import AssignmentKind, ClusterAssignment, normalize_embeddings


@dataclass(slots=True)
class GroupCandidate:
    response_id: UUID
    assignment: ClusterAssignment
    embedding: np.ndarray


@dataclass(slots=True)
class ResponseGroupDraft:
    assignment: ClusterAssignment
    representative_id: UUID
    member_ids: list[UUID]

    @property
    def size(self) -> int:
        return len(self.member_ids)


def _group_within_cluster(
    assignment: ClusterAssignment,
    members: Sequence[GroupCandidate],
    *,
    threshold: float,
    min_group_size: int,
) -> list[ResponseGroupDraft]:
    if len(members) < min_group_size:
        return []

    unit = normalize_embeddings(np.vstack([member.embedding for member in members]))
    similarity = unit @ unit.T
    adjacency = similarity >= threshold
    np.fill_diagonal(adjacency, False)
    component_count, component_labels = connected_components(csr_matrix(adjacency), directed=False)

    groups: list[ResponseGroupDraft] = []
    for component in range(component_count):
        positions = np.flatnonzero(component_labels == component)
        if positions.size < min_group_size:
            continue
        component_vectors = unit[positions]
        centroid = normalize_embeddings(component_vectors.mean(axis=0))[0]
        closest = int(positions[int(np.argmax(component_vectors @ centroid))])
        groups.append(
            ResponseGroupDraft(
                assignment=assignment,
                representative_id=members[closest].response_id,
                member_ids=[members[int(position)].response_id for position in positions],
            )
        )
    return groups


def group_responses_by_similarity(
    candidates: Sequence[GroupCandidate],
    *,
    threshold: float = 0.80,
    min_group_size: int = 2,
) -> list[ResponseGroupDraft]:
    """Return groups of responses whose pairwise cosine similarity chains above `threshold`.

    Unassigned responses are ignored. Similarity is transitive through the
    graph, so two paraphrases linked by a third land in the same group. The
    representative is the member closest to the group's normalised centroid.
    """

    by_cluster: dict[ClusterAssignment, list[GroupCandidate]] = defaultdict(list)
    for candidate in candidates:
        if candidate.assignment.kind is AssignmentKind.UNASSIGNED:
            continue
        by_cluster[candidate.assignment].append(candidate)

    groups: list[ResponseGroupDraft] = []
    for assignment, members in by_cluster.items():
        groups.extend(
            _group_within_cluster(
                assignment,
                members,
                threshold=threshold,
                min_group_size=min_group_size,
            )
        )
    return groups
