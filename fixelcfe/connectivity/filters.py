"""Fixel data filters driven by the connectivity matrix.

- Connectivity-based smoothing: a Gaussian spatial kernel restricted to
  structurally connected fixels.
- Connected components: clusters of supra-threshold fixels linked by
  supra-threshold connectivity.
"""

import logging

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components as _csgraph_components

from fixelcfe.connectivity.matrix import ConnectivityGraph, NormAdjacency
from fixelcfe.utils.exceptions import ConsistencyError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_VALUE_THRESHOLD = 0.5
DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD = 0.1


def graph_to_sparse(graph: ConnectivityGraph, apply_multiplier: bool = False) -> sparse.csr_matrix:
    """Row-wise CSR view of a connectivity graph (row = fixel, column = neighbour)."""
    num_fixels = len(graph)
    lengths = np.fromiter((len(a) for a in graph), dtype=np.int64, count=num_fixels)
    indptr = np.concatenate(([0], np.cumsum(lengths)))
    if indptr[-1]:
        indices = np.concatenate([a.indices for a in graph])
        if apply_multiplier:
            data = np.concatenate([a.weights * a.norm_multiplier for a in graph])
        else:
            data = np.concatenate([a.weights for a in graph])
    else:
        indices = np.zeros(0, dtype=np.int64)
        data = np.zeros(0, dtype=np.float64)
    return sparse.csr_matrix((data, indices, indptr), shape=(num_fixels, num_fixels))


def build_smoothing_matrix(graph: ConnectivityGraph, positions: np.ndarray,
                           fwhm: float, threshold: float) -> ConnectivityGraph:
    """Combine connectivity with a spatial Gaussian kernel.

    Each connection's weight becomes ``connectivity * gaussian(distance)``;
    weights below ``threshold`` are dropped and the remainder rescaled to
    sum to one. A fixel with no surviving weights is given a unit
    self-connection so that smoothing preserves its value.

    Args:
        graph: Normalised connectivity matrix.
        positions: Scanner-space position of each fixel, shape (N, 3).
        fwhm: Full width at half maximum of the Gaussian (mm).
        threshold: Minimum smoothing weight.
    """
    positions = np.asarray(positions, dtype=np.float64)
    if positions.shape != (len(graph), 3):
        raise ConsistencyError(
            f"Fixel positions have shape {positions.shape}; "
            f"expected ({len(graph)}, 3)"
        )
    stdev = fwhm / 2.3548
    gaussian_const1 = 1.0 / (stdev * np.sqrt(2.0 * np.pi))
    gaussian_const2 = -1.0 / (2.0 * stdev * stdev)

    smoothing = ConnectivityGraph()
    for fixel, adjacency in enumerate(graph):
        sq_distance = np.sum((positions[adjacency.indices] - positions[fixel]) ** 2, axis=1)
        weights = adjacency.weights * gaussian_const1 * np.exp(gaussian_const2 * sq_distance)
        keep = weights >= threshold
        if np.any(keep):
            kernel = NormAdjacency(adjacency.indices[keep], weights[keep])
            kernel.rescale()
        else:
            kernel = NormAdjacency([fixel], [1.0])
        smoothing.append(kernel)
    return smoothing


def smooth(values: np.ndarray, smoothing_matrix: ConnectivityGraph) -> np.ndarray:
    """Smooth fixel data with a smoothing matrix.

    Output is the weighted mean over finite neighbour values; non-finite
    input fixels, and fixels with no finite neighbours, are NaN.
    """
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    if values.size != len(smoothing_matrix):
        raise ConsistencyError(
            f"Size of fixel data ({values.size}) does not match fixel "
            f"connectivity matrix ({len(smoothing_matrix)})"
        )
    weights = graph_to_sparse(smoothing_matrix)
    finite = np.isfinite(values)
    numerator = weights @ np.where(finite, values, 0.0)
    denominator = weights @ finite.astype(np.float64)
    output = np.full(values.size, np.nan)
    valid = finite & (denominator > 0.0)
    output[valid] = numerator[valid] / denominator[valid]
    return output


def connected_components(values: np.ndarray, graph: ConnectivityGraph,
                         value_threshold: float = DEFAULT_CONNECT_VALUE_THRESHOLD,
                         connectivity_threshold: float = DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD) -> np.ndarray:
    """Label clusters of connected supra-threshold fixels.

    Returns:
        Integer label per fixel: 0 for fixels at or below ``value_threshold``,
        otherwise 1 for the largest cluster, 2 for the next, and so on (ties
        ordered by lowest fixel id).
    """
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    if values.size != len(graph):
        raise ConsistencyError(
            f"Size of fixel data ({values.size}) does not match fixel "
            f"connectivity matrix ({len(graph)})"
        )
    supra = np.isfinite(values) & (values > value_threshold)
    adjacency = graph_to_sparse(graph).tocoo()
    keep = (
        (adjacency.data >= connectivity_threshold)
        & supra[adjacency.row]
        & supra[adjacency.col]
    )
    edges = sparse.csr_matrix(
        (np.ones(int(keep.sum())), (adjacency.row[keep], adjacency.col[keep])),
        shape=adjacency.shape,
    )
    _, components = _csgraph_components(edges, directed=True, connection="weak")

    labels = np.zeros(values.size, dtype=np.int64)
    if not np.any(supra):
        return labels
    component_ids, first_fixel, sizes = np.unique(
        components[supra], return_index=True, return_counts=True
    )
    order = np.lexsort((first_fixel, -sizes))
    relabel = np.zeros(components.max() + 1, dtype=np.int64)
    relabel[component_ids[order]] = np.arange(1, order.size + 1)
    labels[supra] = relabel[components[supra]]
    logger.debug(f"Found {order.size} connected fixel clusters")
    return labels
