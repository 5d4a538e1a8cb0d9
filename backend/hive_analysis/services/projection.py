"""Two-dimensional projection of response embeddings.

Classes:
    ProjectionResult: 2D coordinates plus the method that produced them and any fallback warnings.

Functions:
    reduce_to_2d(embeddings, ...): Project embeddings with UMAP, falling back to PCA for small or awkward inputs.
    compute_pca_projection(embeddings): Deterministic PCA projection padded to two components.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
from sklearn.decomposition import PCA

from hive_analysis.core.config import get_settings

_LOGGER = logging.getLogger(__name__)
_HOMOGENEOUS_TOLERANCE = 1e-9


@dataclass(slots=True)
class ProjectionResult:
    coords_2d: np.ndarray
    method: str
    warnings: list[str] = field(default_factory=list)


def _is_homogeneous(data: np.ndarray) -> bool:
    spread = np.ptp(data, axis=0) if data.size else np.zeros(0)
    return bool(np.all(spread <= _HOMOGENEOUS_TOLERANCE))


def compute_pca_projection(embeddings: np.ndarray) -> ProjectionResult:
    data = np.asarray(embeddings, dtype=float)
    count = data.shape[0]
    if count == 0:
        return ProjectionResult(coords_2d=np.zeros((0, 2), dtype=float), method="pca")
    if data.ndim != 2 or data.shape[1] == 0 or count == 1 or _is_homogeneous(data):
        return ProjectionResult(coords_2d=np.zeros((count, 2), dtype=float), method="pca")

    components = min(2, count, data.shape[1])
    coords = PCA(n_components=components, svd_solver="full").fit_transform(data)
    if coords.shape[1] < 2:
        coords = np.column_stack([coords, np.zeros((count, 2 - coords.shape[1]))])
    return ProjectionResult(coords_2d=np.nan_to_num(coords), method="pca")


def reduce_to_2d(
    embeddings: np.ndarray,
    *,
    n_neighbors: int | None = None,
    min_dist: float | None = None,
    metric: str | None = None,
    random_state: int | None = None,
) -> ProjectionResult:
    """Return one (x, y) pair per embedding.

    Empty input yields an empty (0, 2) array; one row or identical rows collapse
    to the origin without raising. Populations below `umap_min_points` use PCA.
    """

    settings = get_settings()
    data = np.asarray(embeddings, dtype=float)
    count = data.shape[0]
    if count == 0:
        return ProjectionResult(coords_2d=np.zeros((0, 2), dtype=float), method="none")
    if count == 1 or _is_homogeneous(data):
        return ProjectionResult(coords_2d=np.zeros((count, 2), dtype=float), method="degenerate")
    if count < settings.umap_min_points:
        return compute_pca_projection(data)

    neighbours = n_neighbors or settings.umap_n_neighbors
    neighbours = max(2, min(int(neighbours), count - 1))
    seed = random_state if random_state is not None else settings.umap_seed

    try:
        import umap  # heavy import, deferred until a projection is actually needed

        reducer = umap.UMAP(
            n_components=2,
            n_neighbors=neighbours,
            min_dist=min_dist if min_dist is not None else settings.umap_min_dist,
            metric=metric or settings.umap_metric,
            random_state=seed,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            coords = reducer.fit_transform(data)
    except (ValueError, TypeError) as exc:
        _LOGGER.warning("UMAP projection failed for %d points, falling back to PCA: %s", count, exc)
        fallback = compute_pca_projection(data)
        fallback.warnings.append(f"umap_failed: {exc}")
        return fallback

    coords = np.asarray(coords, dtype=float)
    if not np.all(np.isfinite(coords)):
        _LOGGER.warning("UMAP produced non-finite coordinates, falling back to PCA")
        fallback = compute_pca_projection(data)
        fallback.warnings.append("umap_non_finite")
        return fallback
    return ProjectionResult(coords_2d=coords, method="umap")
