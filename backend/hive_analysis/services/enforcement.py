"""Minimum cluster floor enforcement via forced k=2 splits.

Classes:
    EnforcementResult: Updated labels plus the bookkeeping of how the floor was (or was not) reached.

Functions:
    determine_target_min_clusters(response_count, ...): SMALL or LARGE floor by population size.
    compute_effective_min_clusters(target, response_count, ...): Floor bounded by what the population can support.
    enforce_min_clusters(embeddings, labels, response_count, ...): Split the largest eligible clusters until the floor holds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from hive_analysis.core.config import Settings, get_settings
from hive_analysis.services.clustering import (
    coerce_misc_mask,
    cluster_embeddings,
    cluster_sizes,
    cosine_distances_to,
    relabel_by_size,
)

ALREADY_MEETS_FLOOR = "Already meets minimum cluster floor"
NO_ELIGIBLE_CLUSTERS = "No eligible clusters to split (all below minimum size threshold)"

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EnforcementResult:
    labels: np.ndarray
    splits_performed: int
    target_min_clusters: int
    effective_min_clusters: int
    final_cluster_count: int
    reason: Optional[str] = None


def determine_target_min_clusters(response_count: int, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if response_count <= settings.small_population_max:
        return settings.min_clusters_small
    return settings.min_clusters_large


def compute_effective_min_clusters(
    target_min_clusters: int,
    response_count: int,
    settings: Settings | None = None,
) -> int:
    settings = settings or get_settings()
    effective = min(target_min_clusters, response_count)
    return max(0, min(effective, response_count // settings.min_forced_cluster_size))


def _largest_eligible_cluster(sizes: dict[int, int], min_split_size: int) -> int | None:
    eligible = [(size, label) for label, size in sizes.items() if size >= min_split_size]
    if not eligible:
        return None
    # lowest cluster index wins between equally large clusters
    _, label = min(eligible, key=lambda item: (-item[0], item[1]))
    return label


def _rebalance_children(points: np.ndarray, child_labels: np.ndarray, min_size: int) -> np.ndarray:
    """Top up an undersized child with the other child's members nearest to it."""

    counts = np.bincount(child_labels, minlength=2)
    small = int(np.argmin(counts))
    deficit = min_size - int(counts[small])
    if deficit <= 0:
        return child_labels

    large = 1 - small
    large_positions = np.flatnonzero(child_labels == large)
    if counts[small] > 0:
        anchor = points[child_labels == small].mean(axis=0)
        order = np.argsort(cosine_distances_to(points[large_positions], anchor), kind="stable")
    else:
        anchor = points[large_positions].mean(axis=0)
        order = np.argsort(-cosine_distances_to(points[large_positions], anchor), kind="stable")
    adjusted = child_labels.copy()
    adjusted[large_positions[order[:deficit]]] = small
    return adjusted


def _split_cluster(
    embeddings: np.ndarray,
    labels: np.ndarray,
    misc_mask: np.ndarray,
    cluster: int,
    *,
    min_size: int,
    seed: int,
) -> tuple[np.ndarray, tuple[int, int]]:
    positions = np.flatnonzero((labels == cluster) & ~misc_mask)
    points = embeddings[positions]
    child_labels = cluster_embeddings(points, k=2, seed=seed)
    child_labels = _rebalance_children(points, child_labels, min_size)

    counts = np.bincount(child_labels, minlength=2)
    # the larger child keeps the original label; on a tie the child holding the first member stays
    if counts[0] != counts[1]:
        stays = int(np.argmax(counts))
    else:
        stays = int(child_labels[0])

    new_label = int(labels[~misc_mask].max()) + 1
    updated = labels.copy()
    updated[positions[child_labels != stays]] = new_label
    return updated, (int(counts[stays]), int(counts[1 - stays]))


def enforce_min_clusters(
    embeddings: np.ndarray,
    labels: np.ndarray,
    response_count: int,
    *,
    misc_mask: np.ndarray | None = None,
    settings: Settings | None = None,
) -> EnforcementResult:
    """Guarantee a minimum number of non-misc clusters where the population allows it.

    The largest cluster of at least twice the minimum forced size is split in
    two with seeded k-means until the effective floor is reached. Misc entries
    are never split, counted, or relabelled. Labels are relabelled by size
    before returning whenever a split happened.
    """

    settings = settings or get_settings()
    data = np.asarray(embeddings, dtype=float)
    current = np.asarray(labels, dtype=int).copy()
    mask = coerce_misc_mask(current, misc_mask)

    target = determine_target_min_clusters(response_count, settings)
    effective = compute_effective_min_clusters(target, response_count, settings)
    sizes = cluster_sizes(current, mask)
    cluster_count = len(sizes)

    if cluster_count >= effective:
        return EnforcementResult(
            labels=current,
            splits_performed=0,
            target_min_clusters=target,
            effective_min_clusters=effective,
            final_cluster_count=cluster_count,
            reason=ALREADY_MEETS_FLOOR,
        )

    min_split_size = 2 * settings.min_forced_cluster_size
    splits = 0
    reason: str | None = None
    while cluster_count < effective:
        cluster = _largest_eligible_cluster(sizes, min_split_size)
        if cluster is None:
            reason = NO_ELIGIBLE_CLUSTERS
            break
        size_before = sizes[cluster]
        current, child_sizes = _split_cluster(
            data,
            current,
            mask,
            cluster,
            min_size=settings.min_forced_cluster_size,
            seed=settings.kmeans_seed,
        )
        splits += 1
        sizes = cluster_sizes(current, mask)
        cluster_count = len(sizes)
        _LOGGER.info(
            "Split cluster %d (size %d) into %s",
            cluster,
            size_before,
            list(child_sizes),
        )

    return EnforcementResult(
        labels=relabel_by_size(current, mask),
        splits_performed=splits,
        target_min_clusters=target,
        effective_min_clusters=effective,
        final_cluster_count=cluster_count,
        reason=reason,
    )
