"""Embedding normalisation, k-means clustering, and cluster label helpers.

Classes:
    AssignmentKind: Kinds of cluster assignment a response can hold.
    ClusterAssignment: Tagged cluster assignment converted to the storage encoding only at the persistence boundary.

Functions:
    normalize_embeddings(vectors): Rescale rows to unit length, leaving zero rows untouched.
    cosine_distance(a, b): Cosine distance with zero-magnitude vectors treated as maximally distant.
    cosine_distances_to(matrix, centroid): Vectorised cosine distance from each row to one centroid.
    determine_optimal_clusters(embeddings, ...): Knee detection over the k-means distortion curve.
    cluster_embeddings(embeddings, k, ...): Partition embeddings with seeded k-means.
    relabel_by_size(labels, misc_mask): Renumber clusters so index 0 is the largest.
    compute_centroids(embeddings, labels, misc_mask): Mean vector per cluster.
    cluster_sizes(labels, misc_mask): Member count per cluster.
"""

from __future__ import annotations

import logging
import warnings
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

MISC_STORAGE_VALUE = -1
MAX_COSINE_DISTANCE = 2.0

_ZERO_TOLERANCE = 1e-10
_LINEAR_THRESHOLD = 0.001
_DEFAULT_SEED = 42

_LOGGER = logging.getLogger(__name__)


class AssignmentKind(str, Enum):
    NUMBERED = "numbered"
    MISC = "misc"
    UNASSIGNED = "unassigned"


@dataclass(frozen=True, slots=True)
class ClusterAssignment:
    kind: AssignmentKind
    index: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind is AssignmentKind.NUMBERED:
            if self.index is None or self.index < 0:
                raise ValueError("numbered assignments need a non-negative index")
        elif self.index is not None:
            raise ValueError(f"{self.kind.value} assignments carry no index")

    @classmethod
    def numbered(cls, index: int) -> "ClusterAssignment":
        return cls(AssignmentKind.NUMBERED, int(index))

    @property
    def is_misc(self) -> bool:
        return self.kind is AssignmentKind.MISC

    @property
    def is_numbered(self) -> bool:
        return self.kind is AssignmentKind.NUMBERED

    def to_storage(self) -> int | None:
        if self.kind is AssignmentKind.NUMBERED:
            return self.index
        if self.kind is AssignmentKind.MISC:
            return MISC_STORAGE_VALUE
        return None

    @classmethod
    def from_storage(cls, value: int | None) -> "ClusterAssignment":
        if value is None:
            return UNASSIGNED
        if value == MISC_STORAGE_VALUE:
            return MISC
        return cls.numbered(value)


MISC = ClusterAssignment(AssignmentKind.MISC)
UNASSIGNED = ClusterAssignment(AssignmentKind.UNASSIGNED)


def normalize_embeddings(vectors: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1) if matrix.size else matrix.reshape(0, 0)
    if matrix.size == 0:
        return matrix.copy()
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return matrix / safe


def cosine_distance(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    if left.shape != right.shape:
        raise ValueError("Vectors must have same length")
    mag_a = float(np.linalg.norm(left))
    mag_b = float(np.linalg.norm(right))
    if mag_a == 0 or mag_b == 0:
        return MAX_COSINE_DISTANCE
    similarity = float(np.dot(left, right)) / (mag_a * mag_b)
    return 1.0 - similarity


def cosine_distances_to(matrix: np.ndarray, centroid: np.ndarray) -> np.ndarray:
    data = np.asarray(matrix, dtype=float)
    target = np.asarray(centroid, dtype=float)
    if data.size == 0:
        return np.zeros((data.shape[0],), dtype=float)
    row_norms = np.linalg.norm(data, axis=1)
    centroid_norm = float(np.linalg.norm(target))
    distances = np.full(data.shape[0], MAX_COSINE_DISTANCE, dtype=float)
    if centroid_norm == 0:
        return distances
    valid = row_norms > 0
    if valid.any():
        similarity = (data[valid] @ target) / (row_norms[valid] * centroid_norm)
        distances[valid] = 1.0 - similarity
    return distances


def _default_min_cluster_size(count: int) -> int:
    if count >= 400:
        return 20
    if count >= 200:
        return 16
    if count >= 100:
        return 12
    return 8


def _run_kmeans(data: np.ndarray, k: int, seed: int) -> KMeans:
    model = KMeans(n_clusters=k, init="k-means++", n_init=10, random_state=seed)
    with warnings.catch_warnings():
        # duplicate points legitimately yield fewer distinct clusters than k
        warnings.simplefilter("ignore", ConvergenceWarning)
        model.fit(data)
    return model


def _perpendicular_distance(x: float, y: float, x1: float, y1: float, x2: float, y2: float) -> float:
    dx = x2 - x1
    dy = y2 - y1
    denominator = float(np.hypot(dx, dy))
    if denominator == 0:
        return 0.0
    return abs(dy * x - dx * y + x2 * y1 - y2 * x1) / denominator


def determine_optimal_clusters(
    embeddings: np.ndarray,
    *,
    min_cluster_size: int | None = None,
    max_clusters: int | None = None,
    seed: int = _DEFAULT_SEED,
) -> int:
    """Pick k at the knee of the k-means distortion curve.

    Distortions are evaluated for k = 1..maxK where maxK keeps at least
    `min_cluster_size` members per cluster and never exceeds n // 3. The chosen
    k is the point farthest from the straight line joining the first and last
    distortions. Homogeneous data and effectively linear curves return 1.
    """

    data = np.asarray(embeddings, dtype=float)
    count = data.shape[0]
    if count == 0:
        return 0
    if count == 1:
        return 1

    floor = min_cluster_size or _default_min_cluster_size(count)
    max_k = min(count // max(1, floor), count // 3)
    if max_clusters is not None:
        max_k = min(max_k, max_clusters)
    if max_k < 1:
        return 1

    distortions = [float(_run_kmeans(data, k, seed).inertia_) for k in range(1, max_k + 1)]
    _LOGGER.debug("Distortions for k=1..%d over %d points: %s", max_k, count, distortions)

    if distortions[0] < _ZERO_TOLERANCE:
        return 1
    if len(distortions) == 1:
        return 1

    x1, y1 = 1.0, distortions[0]
    x2, y2 = float(max_k), distortions[-1]
    best_k = 1
    best_distance = 0.0
    for k, distortion in enumerate(distortions, start=1):
        distance = _perpendicular_distance(float(k), distortion, x1, y1, x2, y2)
        if distance > best_distance:
            best_distance = distance
            best_k = k

    y_range = abs(y1 - y2)
    strong_k2_drop = abs(distortions[0] - distortions[1]) > 0.5 * distortions[0]
    if not strong_k2_drop and y_range > 0 and best_distance < _LINEAR_THRESHOLD * y_range:
        return 1
    return best_k


def cluster_embeddings(
    embeddings: np.ndarray,
    k: int | None = None,
    *,
    min_cluster_size: int | None = None,
    max_clusters: int | None = None,
    seed: int = _DEFAULT_SEED,
) -> np.ndarray:
    """Return one zero-based label per row; labels are not ordered by size."""

    data = np.asarray(embeddings, dtype=float)
    count = data.shape[0]
    if count == 0:
        return np.zeros((0,), dtype=int)
    if count == 1:
        return np.zeros((1,), dtype=int)

    if k is None:
        k = determine_optimal_clusters(
            data,
            min_cluster_size=min_cluster_size,
            max_clusters=max_clusters,
            seed=seed,
        )
    k = max(1, min(int(k), count))
    if k == 1:
        return np.zeros((count,), dtype=int)

    model = _run_kmeans(data, k, seed)
    labels = np.asarray(model.labels_, dtype=int)
    _LOGGER.debug("k-means k=%d sizes=%s", k, sorted(Counter(labels.tolist()).values(), reverse=True))
    return labels


def coerce_misc_mask(labels: np.ndarray, misc_mask: np.ndarray | None) -> np.ndarray:
    if misc_mask is None:
        return np.zeros(labels.shape[0], dtype=bool)
    mask = np.asarray(misc_mask, dtype=bool)
    if mask.shape[0] != labels.shape[0]:
        raise ValueError("misc_mask must match labels length")
    return mask


def cluster_sizes(labels: np.ndarray, misc_mask: np.ndarray | None = None) -> dict[int, int]:
    values = np.asarray(labels, dtype=int)
    mask = coerce_misc_mask(values, misc_mask)
    return dict(Counter(int(label) for label in values[~mask]))


def relabel_by_size(labels: np.ndarray, misc_mask: np.ndarray | None = None) -> np.ndarray:
    """Renumber clusters by descending size; ties keep the lower original label first.

    Entries flagged in `misc_mask` are excluded from counting and copied through
    unchanged.
    """

    values = np.asarray(labels, dtype=int)
    mask = coerce_misc_mask(values, misc_mask)
    sizes = cluster_sizes(values, mask)
    ordered = sorted(sizes.items(), key=lambda item: (-item[1], item[0]))
    mapping = {old: new for new, (old, _) in enumerate(ordered)}
    relabelled = values.copy()
    for position in np.flatnonzero(~mask):
        relabelled[position] = mapping[int(values[position])]
    return relabelled


def compute_centroids(
    embeddings: np.ndarray,
    labels: np.ndarray,
    misc_mask: np.ndarray | None = None,
) -> dict[int, np.ndarray]:
    data = np.asarray(embeddings, dtype=float)
    values = np.asarray(labels, dtype=int)
    mask = coerce_misc_mask(values, misc_mask)
    centroids: dict[int, np.ndarray] = {}
    for label in sorted(set(values[~mask].tolist())):
        members = data[(values == label) & ~mask]
        centroids[int(label)] = members.mean(axis=0)
    return centroids


def to_assignments(labels: np.ndarray, misc_mask: np.ndarray | None = None) -> list[ClusterAssignment]:
    values = np.asarray(labels, dtype=int)
    mask = coerce_misc_mask(values, misc_mask)
    return [MISC if flagged else ClusterAssignment.numbered(int(label)) for label, flagged in zip(values, mask)]
