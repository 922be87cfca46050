"""Connectivity-based fixel enhancement (CFE)."""

import logging

import numpy as np

from fixelcfe.connectivity.filters import graph_to_sparse
from fixelcfe.connectivity.matrix import ConnectivityGraph, NormAdjacency
from fixelcfe.utils.exceptions import ConsistencyError

logger = logging.getLogger(__name__)

# Guards the step count against round-off when a statistic is an exact
#   multiple of dh
_STEP_EPSILON = 1e-9


def prepare_cfe_graph(graph: ConnectivityGraph, cfe_c: float, legacy: bool = False) -> ConnectivityGraph:
    """Derive the enhancement weights from a connectivity matrix.

    In legacy mode the thresholded connectivity values are used as they
    are. Otherwise each value is raised to the power ``cfe_c`` and the
    fixel's normalisation multiplier is recomputed from the result.
    The input graph is left untouched.
    """
    weights = ConnectivityGraph()
    for adjacency in graph:
        copy = NormAdjacency(adjacency.indices.copy(), adjacency.weights.copy())
        if not legacy:
            copy.exponentiate(cfe_c)
            copy.normalise()
        weights.append(copy)
    return weights


class CFE:
    """Enhance a fixel statistic using connectivity.

    For each fixel with statistic ``t``, the enhanced value is the sum over
    heights ``h = dh, 2 dh, ... <= t`` of ``extent(h)^E * h^H``, where
    ``extent(h)`` is the (multiplier-scaled) connectivity to fixels whose
    statistic is at least ``h``, including the fixel itself.

    Args:
        graph: Enhancement weights (see :func:`prepare_cfe_graph`).
        dh: Height increment.
        e: Extent exponent.
        h: Height exponent.
    """

    def __init__(self, graph: ConnectivityGraph, dh: float, e: float, h: float):
        self.dh = dh
        self.e = e
        self.h = h
        self.weights = graph_to_sparse(graph, apply_multiplier=True)
        self.num_fixels = len(graph)

    def steps(self, stats: np.ndarray) -> np.ndarray:
        with np.errstate(invalid="ignore"):
            steps = np.floor(np.asarray(stats, dtype=np.float64) / self.dh + _STEP_EPSILON)
        steps[~np.isfinite(steps)] = 0
        return np.maximum(steps, 0).astype(np.int64)

    def __call__(self, stats: np.ndarray) -> np.ndarray:
        stats = np.asarray(stats, dtype=np.float64).reshape(-1)
        if stats.size != self.num_fixels:
            raise ConsistencyError(
                f"Statistic has {stats.size} values; connectivity has {self.num_fixels} fixels"
            )
        steps = self.steps(stats)
        enhanced = np.zeros(self.num_fixels)
        for step in range(1, int(steps.max(initial=0)) + 1):
            above = steps >= step
            extent = self.weights @ above.astype(np.float64)
            height = step * self.dh
            enhanced[above] += np.power(extent[above], self.e) * np.power(height, self.h)
        return enhanced

    def enhance_all(self, stats: np.ndarray) -> np.ndarray:
        """Enhance each column of a (fixels, hypotheses) statistic matrix."""
        return np.column_stack([self(stats[:, i]) for i in range(stats.shape[1])])
