"""MAD-based outlier detection over distances to cluster centroids.

The modified z-score `0.6745 * |d - median| / MAD` is robust to the outliers it
is trying to find. Clusters below the size gate are never scored, a zero MAD
never flags anything, and at most `max_outlier_ratio` of a cluster is flagged.

Functions:
    compute_median(values): Median of a non-empty sequence.
    compute_mad(values): Median absolute deviation around the median.
    compute_mad_z_scores(values): Modified z-score per value.
    detect_outliers(distances, ...): Boolean outlier flags for one cluster.
    detect_outliers_per_cluster(labels, distances, ...): Flagged positions grouped by cluster.
    compute_outlier_scores(labels, distances, ...): Per-response z-score, or None for gated clusters.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Optional, Sequence

import numpy as np

MAD_SCALE_FACTOR = 0.6745
DEFAULT_Z_THRESHOLD = 3.5
DEFAULT_MIN_CLUSTER_SIZE = 6
DEFAULT_MAX_OUTLIER_RATIO = 0.20


def compute_median(values: Sequence[float] | np.ndarray) -> float:
    data = np.asarray(values, dtype=float)
    if data.size == 0:
        raise ValueError("Cannot compute median of empty array")
    return float(np.median(data))


def compute_mad(values: Sequence[float] | np.ndarray) -> float:
    data = np.asarray(values, dtype=float)
    if data.size == 0:
        raise ValueError("Cannot compute MAD of empty array")
    median = float(np.median(data))
    return float(np.median(np.abs(data - median)))


def compute_mad_z_scores(values: Sequence[float] | np.ndarray) -> np.ndarray:
    data = np.asarray(values, dtype=float)
    if data.size == 0:
        return np.zeros((0,), dtype=float)
    median = float(np.median(data))
    mad = float(np.median(np.abs(data - median)))
    if mad == 0:
        return np.zeros(data.shape[0], dtype=float)
    return MAD_SCALE_FACTOR * np.abs(data - median) / mad


def detect_outliers(
    distances: Sequence[float] | np.ndarray,
    *,
    threshold: float = DEFAULT_Z_THRESHOLD,
    min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
    max_outlier_ratio: float = DEFAULT_MAX_OUTLIER_RATIO,
    population_size: int | None = None,
) -> np.ndarray:
    """Flag members whose modified z-score exceeds `threshold`.

    `population_size` overrides the size used for the gate, so callers scoring
    only a subset of a cluster (new arrivals) can gate on the whole cluster.
    The cap is always taken over the scored members.
    """

    data = np.asarray(distances, dtype=float)
    flags = np.zeros(data.shape[0], dtype=bool)
    gate_size = population_size if population_size is not None else data.shape[0]
    if data.size == 0 or gate_size < min_cluster_size:
        return flags

    z_scores = compute_mad_z_scores(data)
    candidates = np.flatnonzero(z_scores > threshold)
    max_outliers = int(np.floor(data.shape[0] * max_outlier_ratio))
    if candidates.size > max_outliers:
        # stable sort keeps the earlier member when z-scores tie
        ranked = candidates[np.argsort(-z_scores[candidates], kind="stable")]
        candidates = ranked[:max_outliers]
    flags[candidates] = True
    return flags


def _group_positions(labels: Sequence[int] | np.ndarray) -> dict[int, list[int]]:
    groups: dict[int, list[int]] = defaultdict(list)
    for position, label in enumerate(np.asarray(labels, dtype=int).tolist()):
        groups[int(label)].append(position)
    return groups


def detect_outliers_per_cluster(
    labels: Sequence[int] | np.ndarray,
    distances: Sequence[float] | np.ndarray,
    *,
    threshold: float = DEFAULT_Z_THRESHOLD,
    min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
    max_outlier_ratio: float = DEFAULT_MAX_OUTLIER_RATIO,
) -> dict[int, set[int]]:
    label_array = np.asarray(labels, dtype=int)
    distance_array = np.asarray(distances, dtype=float)
    if label_array.shape[0] != distance_array.shape[0]:
        raise ValueError("labels and distances must have same length")

    outliers: dict[int, set[int]] = {}
    for label, positions in _group_positions(label_array).items():
        flags = detect_outliers(
            distance_array[positions],
            threshold=threshold,
            min_cluster_size=min_cluster_size,
            max_outlier_ratio=max_outlier_ratio,
        )
        flagged = {positions[offset] for offset in np.flatnonzero(flags)}
        if flagged:
            outliers[label] = flagged
    return outliers


def compute_outlier_scores(
    labels: Sequence[int] | np.ndarray,
    distances: Sequence[float] | np.ndarray,
    *,
    min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
) -> list[Optional[float]]:
    distance_array = np.asarray(distances, dtype=float)
    scores: list[Optional[float]] = [None] * distance_array.shape[0]
    for positions in _group_positions(labels).values():
        if len(positions) < min_cluster_size:
            continue
        z_scores = compute_mad_z_scores(distance_array[positions])
        for position, score in zip(positions, z_scores):
            scores[position] = float(score)
    return scores
