import numpy as np
import pytest

from hive_analysis.services.outliers import (
    compute_mad,
    compute_mad_z_scores,
    compute_median,
    compute_outlier_scores,
    detect_outliers,
    detect_outliers_per_cluster,
)

SPREAD_WITH_THREE_FAR = [0.10, 0.11, 0.12, 0.10, 0.11, 0.12, 0.11, 4.0, 5.0, 6.0]


def test_median_and_mad():
    assert compute_median([3.0, 1.0, 2.0]) == pytest.approx(2.0)
    assert compute_mad([1.0, 2.0, 3.0, 4.0, 100.0]) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        compute_mad([])
    with pytest.raises(ValueError):
        compute_median([])


def test_z_scores_are_zero_when_mad_is_zero():
    scores = compute_mad_z_scores([0.2, 0.2, 0.2, 0.2])
    assert np.allclose(scores, 0.0)


def test_cluster_below_size_gate_is_never_flagged():
    flags = detect_outliers([0.1, 0.1, 0.12, 0.11, 9.0], min_cluster_size=6)
    assert not flags.any()


def test_identical_distances_flag_nothing():
    flags = detect_outliers([0.3] * 12)
    assert not flags.any()


def test_flagged_count_is_capped_by_ratio_keeping_highest_scores():
    flags = detect_outliers(SPREAD_WITH_THREE_FAR, threshold=3.5, min_cluster_size=6, max_outlier_ratio=0.2)
    assert flags.sum() == 2
    assert np.flatnonzero(flags).tolist() == [8, 9]


def test_population_size_overrides_the_size_gate():
    gated = detect_outliers(SPREAD_WITH_THREE_FAR, min_cluster_size=6, population_size=4)
    assert not gated.any()
    scored = detect_outliers(SPREAD_WITH_THREE_FAR[:2], min_cluster_size=6, population_size=20)
    assert not scored.any()


@pytest.mark.parametrize("size", [6, 7, 10, 23])
def test_never_flags_more_than_ratio_allows(size):
    distances = [0.1 + 0.001 * index for index in range(size - 3)] + [5.0, 6.0, 7.0]
    flags = detect_outliers(distances, max_outlier_ratio=0.2)
    assert flags.sum() <= int(np.floor(size * 0.2))


def test_detect_outliers_per_cluster_groups_positions():
    labels = [0] * 10 + [1] * 3
    distances = SPREAD_WITH_THREE_FAR + [0.1, 0.1, 9.0]
    assert detect_outliers_per_cluster(labels, distances) == {0: {8, 9}}
    with pytest.raises(ValueError):
        detect_outliers_per_cluster([0, 0], [0.1])


def test_outlier_scores_only_for_clusters_passing_the_gate():
    labels = [0] * 6 + [1] * 3
    distances = [0.1, 0.2, 0.1, 0.2, 0.1, 0.9, 0.1, 0.2, 0.3]
    scores = compute_outlier_scores(labels, distances, min_cluster_size=6)
    assert all(score is not None for score in scores[:6])
    assert scores[6:] == [None, None, None]
