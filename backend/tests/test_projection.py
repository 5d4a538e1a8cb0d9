import numpy as np

from hive_analysis.services.projection import compute_pca_projection, reduce_to_2d


def test_reduce_to_2d_handles_empty_input():
    result = reduce_to_2d(np.zeros((0, 4)))
    assert result.coords_2d.shape == (0, 2)


def test_reduce_to_2d_collapses_single_and_identical_points():
    single = reduce_to_2d(np.array([[0.1, -0.2, 0.3]]))
    assert single.coords_2d.shape == (1, 2)
    assert np.allclose(single.coords_2d, 0.0)

    identical = reduce_to_2d(np.tile([0.5, 0.5, 0.0], (12, 1)))
    assert identical.coords_2d.shape == (12, 2)
    assert np.allclose(identical.coords_2d, 0.0)
    assert identical.method == "degenerate"


def test_small_populations_use_pca():
    rng = np.random.default_rng(1)
    data = rng.normal(size=(5, 8))
    result = reduce_to_2d(data)
    assert result.method == "pca"
    assert result.coords_2d.shape == (5, 2)
    assert np.all(np.isfinite(result.coords_2d))


def test_pca_pads_one_dimensional_input():
    data = np.array([[0.0], [1.0], [2.0]])
    result = compute_pca_projection(data)
    assert result.coords_2d.shape == (3, 2)
    assert np.allclose(result.coords_2d[:, 1], 0.0)


def test_umap_projection_is_deterministic_with_seed():
    rng = np.random.default_rng(42)
    data = rng.normal(size=(30, 8))
    first = reduce_to_2d(data, random_state=42)
    second = reduce_to_2d(data, random_state=42)
    assert first.coords_2d.shape == (30, 2)
    assert np.all(np.isfinite(first.coords_2d))
    assert np.allclose(first.coords_2d, second.coords_2d)
