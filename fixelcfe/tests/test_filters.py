import numpy as np
import pytest

from fixelcfe.connectivity.filters import (build_smoothing_matrix,
                                           connected_components,
                                           graph_to_sparse,
                                           smooth)
from fixelcfe.connectivity.matrix import ConnectivityGraph, NormAdjacency
from fixelcfe.utils.exceptions import ConsistencyError


def _chain(num_fixels, weight=1.0):
    graph = ConnectivityGraph()
    for fixel in range(num_fixels):
        neighbours = [n for n in (fixel - 1, fixel, fixel + 1) if 0 <= n < num_fixels]
        graph.append(NormAdjacency(neighbours, [weight] * len(neighbours)))
    return graph


def _positions(num_fixels):
    return np.column_stack([np.arange(num_fixels, dtype=float), np.zeros(num_fixels), np.zeros(num_fixels)])


def test_graph_to_sparse():
    graph = _chain(3)
    graph[1].norm_multiplier = 0.5
    dense = graph_to_sparse(graph).toarray()
    np.testing.assert_array_equal(dense, [[1, 1, 0], [1, 1, 1], [0, 1, 1]])
    scaled = graph_to_sparse(graph, apply_multiplier=True).toarray()
    np.testing.assert_array_equal(scaled[1], [0.5, 0.5, 0.5])


def test_smoothing_matrix_rows_sum_to_one():
    smoothing = build_smoothing_matrix(_chain(5), _positions(5), fwhm=2.0, threshold=0.01)
    for fixel, kernel in enumerate(smoothing):
        np.testing.assert_allclose(kernel.weights.sum(), 1.0)
        assert kernel.norm_multiplier == 1.0
        weights = dict(kernel.items())
        assert all(weights[fixel] >= w for w in weights.values())


def test_smoothing_matrix_falls_back_to_identity():
    smoothing = build_smoothing_matrix(_chain(4), _positions(4), fwhm=2.0, threshold=1.0)
    for fixel, kernel in enumerate(smoothing):
        assert dict(kernel.items()) == {fixel: 1.0}


def test_smoothing_matrix_position_mismatch():
    with pytest.raises(ConsistencyError):
        build_smoothing_matrix(_chain(4), _positions(3), fwhm=2.0, threshold=0.01)


def test_smooth_preserves_constant_and_nan():
    smoothing = build_smoothing_matrix(_chain(5), _positions(5), fwhm=3.0, threshold=0.01)
    np.testing.assert_allclose(smooth(np.full(5, 2.0), smoothing), 2.0)

    values = np.array([1.0, np.nan, 3.0, 3.0, 3.0])
    smoothed = smooth(values, smoothing)
    assert np.isnan(smoothed[1])
    np.testing.assert_allclose(smoothed[0], 1.0)
    np.testing.assert_allclose(smoothed[2:], 3.0)


def test_connected_components():
    values = np.array([1.0, 1.0, 0.0, 1.0, 1.0, 1.0])
    labels = connected_components(values, _chain(6), 0.5, 0.1)
    np.testing.assert_array_equal(labels, [2, 2, 0, 1, 1, 1])


def test_connected_components_connectivity_threshold():
    values = np.ones(4)
    labels = connected_components(values, _chain(4, weight=0.05), 0.5, 0.1)
    np.testing.assert_array_equal(labels, [1, 2, 3, 4])
    labels = connected_components(np.zeros(4), _chain(4), 0.5, 0.1)
    np.testing.assert_array_equal(labels, 0)
