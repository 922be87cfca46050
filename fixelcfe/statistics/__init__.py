"""Statistical inference for fixel-wise data.

This module provides tools for:
- GLM testing with fixed or fixel-wise design matrices (Freedman-Lane)
- Subject shuffling (permutations and sign-flips)
- Connectivity-based fixel enhancement (CFE)
- Permutation testing for FWE correction, with optional non-stationarity
  correction
"""

from fixelcfe.statistics.glm import (
    Hypothesis,
    Partition,
    GLMTestBase,
    GLMTestFixed,
    GLMTestVariable,
    DefaultStats,
    load_hypotheses,
    check_hypotheses,
    check_design,
    mask_shuffling_matrix,
    make_glm_test,
    all_stats,
)
from fixelcfe.statistics.shuffle import Shuffle, Shuffler, load_permutations_file
from fixelcfe.statistics.cfe import CFE, prepare_cfe_graph
from fixelcfe.statistics.permutation import (
    EngineState,
    PermutationEngine,
    PermutationResult,
    precompute_empirical_stat,
    precompute_default_permutation,
    run_permutations,
    fwe_pvalue,
    compute_fwe_threshold,
)

__all__ = [
    # GLM
    "Hypothesis",
    "Partition",
    "GLMTestBase",
    "GLMTestFixed",
    "GLMTestVariable",
    "DefaultStats",
    "load_hypotheses",
    "check_hypotheses",
    "check_design",
    "mask_shuffling_matrix",
    "make_glm_test",
    "all_stats",
    # Shuffling
    "Shuffle",
    "Shuffler",
    "load_permutations_file",
    # Enhancement
    "CFE",
    "prepare_cfe_graph",
    # Permutation
    "EngineState",
    "PermutationEngine",
    "PermutationResult",
    "precompute_empirical_stat",
    "precompute_default_permutation",
    "run_permutations",
    "fwe_pvalue",
    "compute_fwe_threshold",
]
