"""Permutation testing with CFE for family-wise error (FWE) correction.

For every shuffle, the GLM statistic is recomputed, enhanced with CFE and
reduced to its maximum over fixels (per hypothesis, or over all hypotheses
under strong FWE control). The maxima form the null distribution used to
compute FWE-corrected p-values.

Shuffles are processed in fixed-size chunks on joblib worker threads. Each
chunk returns partial results keyed by shuffle index and these are merged
in index order, so results do not depend on the number of workers.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed

from fixelcfe.statistics.cfe import CFE
from fixelcfe.statistics.glm import GLMTestBase
from fixelcfe.statistics.shuffle import Shuffler
from fixelcfe.utils.exceptions import ConsistencyError, StatisticalError
from fixelcfe.utils.logging import timer

logger = logging.getLogger(__name__)

SHUFFLE_CHUNK_SIZE = 16


class EngineState(Enum):
    IDLE = "idle"
    EMPIRICAL_PRECOMPUTE = "empirical_precompute"
    DEFAULT_PRECOMPUTE = "default_precompute"
    SHUFFLING = "shuffling"
    FINALIZE = "finalize"
    DONE = "done"


@dataclass
class PermutationResult:
    """Outputs of a permutation run.

    Arrays indexed by fixel have shape (fixels, hypotheses). The null
    distribution has one column per hypothesis, or a single column under
    strong FWE control; ``null_contributions`` follows the same layout.
    """
    default_stats: np.ndarray
    default_enhanced: np.ndarray
    empirical_enhanced: Optional[np.ndarray] = None
    null_distribution: Optional[np.ndarray] = None
    null_contributions: Optional[np.ndarray] = None
    uncorrected_pvalues: Optional[np.ndarray] = None
    fwe_pvalues: Optional[np.ndarray] = None


def _enhance(glm: GLMTestBase, cfe: CFE, shuffling_matrix: np.ndarray,
             empirical: Optional[np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
    stats = glm(shuffling_matrix)
    enhanced = cfe.enhance_all(stats)
    if empirical is not None:
        enhanced = normalise_enhanced(enhanced, empirical)
    return stats, enhanced


def normalise_enhanced(enhanced: np.ndarray, empirical: np.ndarray) -> np.ndarray:
    """Divide by the empirical enhanced statistic; zero where that is zero."""
    output = np.zeros_like(enhanced)
    valid = empirical > 0.0
    output[valid] = enhanced[valid] / empirical[valid]
    return output


def _chunk_indices(count: int, size: int = SHUFFLE_CHUNK_SIZE) -> List[range]:
    return [range(start, min(start + size, count)) for start in range(0, count, size)]


def _empirical_chunk(glm, cfe, shuffler, indices, skew):
    total = np.zeros((glm.num_elements, glm.num_hypotheses))
    count = np.zeros((glm.num_elements, glm.num_hypotheses), dtype=np.int64)
    for shuffle in shuffler.shuffles(indices):
        _, enhanced = _enhance(glm, cfe, shuffle.matrix(), None)
        positive = enhanced > 0.0
        total[positive] += np.power(enhanced[positive], skew)
        count += positive
    return total, count


def precompute_empirical_stat(glm: GLMTestBase, cfe: CFE, shuffler: Shuffler,
                              skew: float = 1.0, n_jobs: int = 1) -> np.ndarray:
    """Expected enhanced statistic of each fixel under the null hypothesis.

    Generalised mean (exponent ``skew``) of the positive enhanced values
    across shuffles; zero for fixels that are never enhanced.
    """
    with timer(logger, f"Pre-computing empirical statistic for non-stationarity correction "
                       f"({len(shuffler)} shuffles)"):
        partials = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_empirical_chunk)(glm, cfe, shuffler, indices, skew)
            for indices in _chunk_indices(len(shuffler))
        )
    total = np.zeros((glm.num_elements, glm.num_hypotheses))
    count = np.zeros((glm.num_elements, glm.num_hypotheses), dtype=np.int64)
    for chunk_total, chunk_count in partials:
        total += chunk_total
        count += chunk_count

    empirical = np.zeros_like(total)
    valid = count > 0
    empirical[valid] = np.power(total[valid] / count[valid], 1.0 / skew)
    return empirical


def precompute_default_permutation(glm: GLMTestBase, cfe: CFE,
                                   empirical: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Statistic and enhanced statistic of the unshuffled data."""
    identity = np.eye(glm.num_subjects)
    with timer(logger, "Running GLM and enhancement algorithm for default permutation"):
        return _enhance(glm, cfe, identity, empirical)


def _permutation_chunk(glm, cfe, shuffler, indices, empirical, default_enhanced, strong):
    maxima = []
    locations = []
    exceed = np.zeros(default_enhanced.shape, dtype=np.int64)
    for shuffle in shuffler.shuffles(indices):
        _, enhanced = _enhance(glm, cfe, shuffle.matrix(), empirical)
        exceed += enhanced >= default_enhanced
        if strong:
            flat = int(np.argmax(enhanced))
            maxima.append([enhanced.flat[flat]])
            locations.append([flat])
        else:
            argmax = np.argmax(enhanced, axis=0)
            maxima.append(enhanced[argmax, np.arange(enhanced.shape[1])])
            locations.append(argmax)
    return indices, np.asarray(maxima), np.asarray(locations, dtype=np.int64), exceed


def run_permutations(glm: GLMTestBase, cfe: CFE, shuffler: Shuffler,
                     default_enhanced: np.ndarray, empirical: Optional[np.ndarray] = None,
                     strong: bool = False, n_jobs: int = 1):
    """Build the null distribution over all shuffles.

    Returns:
        Tuple of (null_distribution, null_contributions, uncorrected_counts):
        - null_distribution: Maximum enhanced statistic per shuffle,
          shape (shuffles, hypotheses) or (shuffles, 1) if ``strong``
        - null_contributions: Number of shuffles whose maximum was found at
          each fixel, shape (fixels, columns of null_distribution)
        - uncorrected_counts: Number of shuffles in which each fixel's
          enhanced statistic reached its unshuffled value
    """
    num_shuffles = len(shuffler)
    num_columns = 1 if strong else glm.num_hypotheses
    null_distribution = np.zeros((num_shuffles, num_columns))
    argmax = np.zeros((num_shuffles, num_columns), dtype=np.int64)
    uncorrected_counts = np.zeros(default_enhanced.shape, dtype=np.int64)

    chunks = _chunk_indices(num_shuffles)
    results = Parallel(n_jobs=n_jobs, prefer="threads", return_as="generator")(
        delayed(_permutation_chunk)(glm, cfe, shuffler, indices, empirical, default_enhanced, strong)
        for indices in chunks
    )
    report_every = max(1, len(chunks) // 10)
    completed = 0
    for chunk_number, (indices, maxima, locations, exceed) in enumerate(results, start=1):
        null_distribution[indices.start:indices.stop] = maxima
        argmax[indices.start:indices.stop] = locations
        uncorrected_counts += exceed
        completed += len(indices)
        if chunk_number % report_every == 0 or completed == num_shuffles:
            logger.info(f"  Completed {completed}/{num_shuffles} shuffles")

    null_contributions = np.zeros((glm.num_elements, num_columns), dtype=np.int64)
    if strong:
        fixels = argmax[:, 0] // glm.num_hypotheses
        np.add.at(null_contributions[:, 0], fixels, 1)
    else:
        for column in range(num_columns):
            np.add.at(null_contributions[:, column], argmax[:, column], 1)

    return null_distribution, null_contributions, uncorrected_counts


def fwe_pvalue(null_distribution: np.ndarray, values: np.ndarray) -> np.ndarray:
    """Fraction of null maxima greater than or equal to each value."""
    ordered = np.sort(np.asarray(null_distribution, dtype=np.float64))
    count = ordered.size - np.searchsorted(ordered, values, side="left")
    return count / ordered.size


def compute_fwe_threshold(null_distribution: np.ndarray, alpha: float = 0.05) -> float:
    """Enhanced-statistic threshold for FWE control at ``alpha``."""
    percentile = 100 * (1 - alpha)
    threshold = float(np.percentile(null_distribution, percentile))
    logger.debug(f"FWE threshold at alpha={alpha}: {threshold:.3f}")
    return threshold


class PermutationEngine:
    """Drive non-parametric inference for a GLM and an enhancer.

    The engine moves through the states of :class:`EngineState`; the
    empirical pre-computation runs only when a non-stationarity shuffler is
    given, and shuffling and finalisation only when a shuffler is given.

    Args:
        glm: GLM test.
        cfe: Enhancer.
        shuffler: Shuffles for the null distribution (identity first), or
            None to compute the unshuffled statistics only.
        nonstationarity_shuffler: Shuffles for the empirical statistic.
        skew: Skew of the empirical statistic.
        strong: Strong FWE control across hypotheses.
        n_jobs: Number of worker threads.
    """

    def __init__(self, glm: GLMTestBase, cfe: CFE, shuffler: Optional[Shuffler] = None,
                 nonstationarity_shuffler: Optional[Shuffler] = None, skew: float = 1.0,
                 strong: bool = False, n_jobs: int = 1):
        if glm.num_elements != cfe.num_fixels:
            raise ConsistencyError(
                f"GLM has {glm.num_elements} fixels; connectivity has {cfe.num_fixels}"
            )
        self.glm = glm
        self.cfe = cfe
        self.shuffler = shuffler
        self.nonstationarity_shuffler = nonstationarity_shuffler
        self.skew = skew
        self.strong = strong
        self.n_jobs = n_jobs
        self.state = EngineState.IDLE
        self.result: Optional[PermutationResult] = None

        if strong and glm.num_hypotheses == 1:
            logger.warning("Strong FWE control has no effect with a single hypothesis")

    def _transition(self, state: EngineState) -> None:
        logger.debug(f"Permutation engine: {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> PermutationResult:
        if self.state is not EngineState.IDLE:
            raise StatisticalError("Permutation engine has already been run")

        empirical = None
        if self.nonstationarity_shuffler is not None:
            self._transition(EngineState.EMPIRICAL_PRECOMPUTE)
            empirical = precompute_empirical_stat(
                self.glm, self.cfe, self.nonstationarity_shuffler, self.skew, self.n_jobs
            )

        self._transition(EngineState.DEFAULT_PRECOMPUTE)
        stats, enhanced = precompute_default_permutation(self.glm, self.cfe, empirical)
        result = PermutationResult(
            default_stats=stats, default_enhanced=enhanced, empirical_enhanced=empirical
        )

        if self.shuffler is not None:
            self._transition(EngineState.SHUFFLING)
            with timer(logger, f"Running {len(self.shuffler)} shuffles"):
                null_distribution, contributions, counts = run_permutations(
                    self.glm, self.cfe, self.shuffler, enhanced, empirical,
                    self.strong, self.n_jobs,
                )

            self._transition(EngineState.FINALIZE)
            num_shuffles = len(self.shuffler)
            result.null_distribution = null_distribution
            result.null_contributions = contributions
            result.uncorrected_pvalues = counts / num_shuffles
            fwe = np.empty_like(enhanced)
            for ih in range(self.glm.num_hypotheses):
                column = 0 if self.strong else ih
                fwe[:, ih] = fwe_pvalue(null_distribution[:, column], enhanced[:, ih])
            result.fwe_pvalues = fwe

            for column in range(null_distribution.shape[1]):
                label = "all hypotheses" if self.strong else self.glm.hypotheses[column].name
                logger.info(
                    f"FWE threshold ({label}): 95%={compute_fwe_threshold(null_distribution[:, column], 0.05):.3f}"
                )

        self._transition(EngineState.DONE)
        self.result = result
        return result
