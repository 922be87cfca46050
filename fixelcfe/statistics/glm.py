"""General linear model testing for fixel-wise inference.

Statistics are computed for a given shuffling matrix using the
Freedman-Lane procedure: data are residualised against the nuisance part of
the model, shuffled across subjects, and regressed against the full design.

Two implementations share the :class:`GLMTestBase` interface:

- :class:`GLMTestFixed` for a design that is identical for every fixel; the
  pseudo-inverse and model partitions are computed once.
- :class:`GLMTestVariable` for designs with fixel-wise covariate columns or
  non-finite data; each fixel's design, subject mask and shuffling matrix
  are assembled and regressed on the fly.

Use :func:`make_glm_test` to pick the right one.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
from scipy import linalg

from fixelcfe.io.readers import load_matrix_file
from fixelcfe.utils.exceptions import ConsistencyError, StatisticalError

logger = logging.getLogger(__name__)

# Residual sum of squares at or below this fraction of the total sum of
#   squares is treated as zero variance
ZERO_VARIANCE_TOLERANCE = 1e-12

CONDITION_NUMBER_WARNING = 1e5


def _rank(matrix: np.ndarray) -> int:
    if matrix.size == 0:
        return 0
    return int(np.linalg.matrix_rank(matrix))


@dataclass
class Partition:
    """Split of a design into columns of interest (X) and nuisance (Z).

    Attributes:
        X: Design columns with a nonzero entry in the hypothesis matrix.
        Z: Remaining design columns.
        Rz: Residual-forming matrix of Z (identity when Z is empty).
        rank_x: Rank of X.
        rank_z: Rank of Z.
    """
    X: np.ndarray
    Z: np.ndarray
    Rz: np.ndarray
    rank_x: int
    rank_z: int


class Hypothesis:
    """A t-test (single row) or F-test (one or more rows) over design factors.

    Args:
        matrix: Hypothesis matrix, shape (rows, factors).
        index: Position of this hypothesis among those of its type.
        is_F: Whether the hypothesis is tested with an F-statistic.
        name: Output label; defaults to ``t<index+1>`` or ``F<index+1>``.
    """

    def __init__(self, matrix, index: int = 0, is_F: bool = False, name: Optional[str] = None):
        matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        if not is_F and matrix.shape[0] != 1:
            raise StatisticalError(
                f"A t-test hypothesis must have a single row (got {matrix.shape[0]})"
            )
        if not np.all(np.isfinite(matrix)):
            raise StatisticalError("Hypothesis matrix contains non-finite values")
        if not np.any(matrix != 0.0, axis=1).all():
            raise StatisticalError("Hypothesis matrix contains a row of zeros")
        self.matrix = matrix
        self.index = index
        self.is_F = is_F
        self.name = name or f"{'F' if is_F else 't'}{index + 1}"
        self.rank = _rank(matrix)

    def __repr__(self) -> str:
        return f"Hypothesis({self.name}, {self.matrix.tolist()})"

    @property
    def cols(self) -> int:
        return int(self.matrix.shape[1])

    def partition(self, design: np.ndarray) -> Partition:
        interest = np.any(self.matrix != 0.0, axis=0)
        X = design[:, interest]
        Z = design[:, ~interest]
        num_subjects = design.shape[0]
        if Z.shape[1]:
            Rz = np.eye(num_subjects) - Z @ linalg.pinv(Z)
        else:
            Rz = np.eye(num_subjects)
        return Partition(X=X, Z=Z, Rz=Rz, rank_x=_rank(X), rank_z=_rank(Z))

    def metric(self, design: np.ndarray) -> np.ndarray:
        """Matrix ``pinv(C pinv(M'M) C')`` weighting betahat in the F numerator."""
        C = self.matrix
        return linalg.pinv(C @ linalg.pinv(design.T @ design) @ C.T)


def load_hypotheses(
    contrast_path: Union[str, Path],
    ftests_path: Optional[Union[str, Path]] = None,
    fonly: bool = False,
) -> List[Hypothesis]:
    """Load t-test contrasts and, optionally, F-tests built from them.

    Each contrast row is a t-test. Each row of the F-test file holds one 0/1
    flag per contrast row, selecting the rows combined into that F-test.

    Args:
        contrast_path: Contrast matrix file.
        ftests_path: Optional F-test definition file.
        fonly: Keep only the F-tests.

    Raises:
        ConsistencyError: If the F-test file does not match the contrast matrix.
    """
    contrasts = load_matrix_file(contrast_path)
    hypotheses = []
    if not fonly:
        hypotheses.extend(Hypothesis(row, index=i) for i, row in enumerate(contrasts))

    if ftests_path is not None:
        ftests = load_matrix_file(ftests_path)
        if ftests.shape[1] != contrasts.shape[0]:
            raise ConsistencyError(
                f"Number of columns in F-test matrix ({ftests.shape[1]}) does not match "
                f"number of rows in contrast matrix ({contrasts.shape[0]})"
            )
        if not np.all(np.isin(ftests, (0.0, 1.0))):
            raise ConsistencyError("F-test matrix must contain only 0 and 1")
        for i, flags in enumerate(ftests):
            selected = flags.astype(bool)
            if not selected.any():
                raise ConsistencyError(f"F-test {i + 1} does not select any contrast rows")
            hypotheses.append(Hypothesis(contrasts[selected], index=i, is_F=True))
    elif fonly:
        raise StatisticalError("Cannot test F-tests only without an F-test file")

    logger.info(
        f"Loaded {len(hypotheses)} hypotheses: {', '.join(h.name for h in hypotheses)}"
    )
    return hypotheses


def check_hypotheses(hypotheses: Sequence[Hypothesis], num_factors: int) -> None:
    """Verify that every hypothesis spans all design factors."""
    if not hypotheses:
        raise StatisticalError("No hypotheses to test")
    for hypothesis in hypotheses:
        if hypothesis.cols != num_factors:
            raise ConsistencyError(
                f"Hypothesis {hypothesis.name} has {hypothesis.cols} columns; "
                f"design matrix (including element-wise columns) has {num_factors} factors"
            )


def check_design(design: np.ndarray, num_extra_columns: int = 0) -> float:
    """Warn about rank deficiency or poor conditioning; return the condition number."""
    singular_values = linalg.svdvals(design)
    if singular_values.size == 0 or singular_values[-1] == 0.0:
        condition = np.inf
    else:
        condition = float(singular_values[0] / singular_values[-1])
    rank = _rank(design)
    if rank < design.shape[1]:
        logger.warning(
            f"Design matrix is rank-deficient (rank {rank}, {design.shape[1]} columns)"
        )
    elif condition > CONDITION_NUMBER_WARNING:
        logger.warning(
            f"Design matrix conditioning is poor (condition number: {condition:.4g}); "
            f"model fitting may be highly influenced by noise"
        )
    else:
        suffix = " (fixed portion)" if num_extra_columns else ""
        logger.info(f"Design matrix condition number{suffix}: {condition:.4g}")
    return condition


def mask_shuffling_matrix(shuffling_matrix: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Restrict a shuffling matrix to the subjects retained by ``mask``.

    Rows that draw from an excluded subject are removed, then the columns
    of excluded subjects are removed.

    The retained rows are those of ``keep_rows``, not those of ``mask``. When
    a permutation routes an excluded subject into a retained row, that row is
    dropped and the row of the excluded subject is kept in its place, so row
    j of the result need not correspond to the j-th retained design row. The
    result is still a permutation (or sign-flip) of the retained subjects.

    Raises:
        StatisticalError: If the result is not square over the retained subjects.
    """
    mask = np.asarray(mask, dtype=bool)
    excluded = ~mask
    keep_rows = ~np.any(shuffling_matrix[:, excluded] != 0.0, axis=1)
    masked = shuffling_matrix[keep_rows][:, mask]
    finite_count = int(mask.sum())
    if masked.shape != (finite_count, finite_count):
        raise StatisticalError(
            f"Masked shuffling matrix has shape {masked.shape}; "
            f"expected ({finite_count}, {finite_count})"
        )
    return masked


def _statistic(shuffled: np.ndarray, design: np.ndarray, pinv_design: np.ndarray,
               hypothesis: Hypothesis, metric: np.ndarray, partition: Partition) -> np.ndarray:
    """t or F for shuffled data of shape (subjects, fixels)."""
    num_subjects = design.shape[0]
    dof = num_subjects - partition.rank_x - partition.rank_z
    if dof <= 0:
        return np.zeros(shuffled.shape[1])

    beta = pinv_design @ shuffled
    betahat = hypothesis.matrix @ beta
    residuals = shuffled - design @ beta
    rss = np.sum(residuals ** 2, axis=0)
    total = np.sum(shuffled ** 2, axis=0)

    numerator = np.einsum("in,ij,jn->n", betahat, metric, betahat) / hypothesis.rank
    with np.errstate(divide="ignore", invalid="ignore"):
        F = numerator / (rss / dof)
    F[rss <= ZERO_VARIANCE_TOLERANCE * total] = 0.0
    F[~np.isfinite(F)] = 0.0

    if hypothesis.is_F:
        return F
    return np.sqrt(np.maximum(F, 0.0)) * np.where(betahat[0] > 0.0, 1.0, -1.0)


class GLMTestBase(ABC):
    """Common interface of the GLM tests.

    Args:
        measurements: Data, shape (subjects, fixels).
        design: Fixed design matrix, shape (subjects, factors).
        hypotheses: Hypotheses to test.
    """

    def __init__(self, measurements: np.ndarray, design: np.ndarray,
                 hypotheses: Sequence[Hypothesis]):
        self.y = np.asarray(measurements, dtype=np.float64)
        self.design = np.asarray(design, dtype=np.float64)
        self.hypotheses = list(hypotheses)
        if self.y.ndim != 2 or self.y.shape[0] != self.design.shape[0]:
            raise ConsistencyError(
                f"Number of subjects in data ({self.y.shape[0] if self.y.ndim else 0}) does "
                f"not match number of rows in design matrix ({self.design.shape[0]})"
            )

    @property
    def num_subjects(self) -> int:
        return int(self.y.shape[0])

    @property
    def num_elements(self) -> int:
        return int(self.y.shape[1])

    @property
    def num_hypotheses(self) -> int:
        return len(self.hypotheses)

    @property
    def num_factors(self) -> int:
        return int(self.design.shape[1])

    @abstractmethod
    def evaluate(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        """Statistic of every fixel for every hypothesis, shape (fixels, hypotheses)."""

    def __call__(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        return self.evaluate(shuffling_matrix)

    def default_design(self, index: int) -> np.ndarray:
        return self.design


class GLMTestFixed(GLMTestBase):
    """GLM test with one design matrix shared by every fixel."""

    def __init__(self, measurements: np.ndarray, design: np.ndarray,
                 hypotheses: Sequence[Hypothesis]):
        super().__init__(measurements, design, hypotheses)
        check_hypotheses(self.hypotheses, self.num_factors)
        self.pinv_design = linalg.pinv(self.design)
        self.partitions = [h.partition(self.design) for h in self.hypotheses]
        self.metrics = [h.metric(self.design) for h in self.hypotheses]

    def evaluate(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        if shuffling_matrix.shape != (self.num_subjects, self.num_subjects):
            raise ConsistencyError(
                f"Shuffling matrix has shape {shuffling_matrix.shape}; "
                f"expected ({self.num_subjects}, {self.num_subjects})"
            )
        output = np.empty((self.num_elements, self.num_hypotheses))
        for ih, hypothesis in enumerate(self.hypotheses):
            partition = self.partitions[ih]
            shuffled = (shuffling_matrix @ partition.Rz) @ self.y
            output[:, ih] = _statistic(
                shuffled, self.design, self.pinv_design,
                hypothesis, self.metrics[ih], partition,
            )
        return output


class GLMTestVariable(GLMTestBase):
    """GLM test whose design differs between fixels.

    The fixed design is extended with one column per element-wise importer,
    and subjects with a non-finite measurement or covariate at a fixel are
    excluded from that fixel's regression.

    Args:
        measurements: Data, shape (subjects, fixels); may hold NaN.
        design: Fixed part of the design matrix.
        hypotheses: Hypotheses over fixed plus element-wise columns.
        extra_columns: Cohort importers providing element-wise columns.
    """

    def __init__(self, measurements: np.ndarray, design: np.ndarray,
                 hypotheses: Sequence[Hypothesis], extra_columns: Sequence = ()):
        super().__init__(measurements, design, hypotheses)
        self.extra_columns = list(extra_columns)
        for column in self.extra_columns:
            if len(column) != self.num_subjects:
                raise ConsistencyError(
                    f"Element-wise design column has {len(column)} subjects; "
                    f"data has {self.num_subjects}"
                )
            if column.size() != self.num_elements:
                raise ConsistencyError(
                    f"Element-wise design column has {column.size()} fixels; "
                    f"data has {self.num_elements}"
                )
        self.nans_in_data = not np.all(np.isfinite(self.y))
        self.nans_in_columns = not all(column.all_finite() for column in self.extra_columns)
        check_hypotheses(self.hypotheses, self.num_factors + len(self.extra_columns))

    def default_design(self, index: int) -> np.ndarray:
        if not self.extra_columns:
            return self.design
        extra = np.column_stack([column(index) for column in self.extra_columns])
        return np.hstack([self.design, extra])

    def element_mask(self, index: int, design: np.ndarray) -> np.ndarray:
        """Subjects with finite data and covariates at one fixel."""
        mask = np.isfinite(self.y[:, index])
        if self.nans_in_columns:
            mask &= np.all(np.isfinite(design), axis=1)
        return mask

    def evaluate(self, shuffling_matrix: np.ndarray) -> np.ndarray:
        if shuffling_matrix.shape != (self.num_subjects, self.num_subjects):
            raise ConsistencyError(
                f"Shuffling matrix has shape {shuffling_matrix.shape}; "
                f"expected ({self.num_subjects}, {self.num_subjects})"
            )
        output = np.empty((self.num_elements, self.num_hypotheses))
        for index in range(self.num_elements):
            design = self.default_design(index)
            y = self.y[:, index]
            mask = self.element_mask(index, design)
            if not mask.any():
                output[index] = 0.0
                continue
            if mask.all():
                shuffling = shuffling_matrix
            else:
                design = design[mask]
                y = y[mask]
                shuffling = mask_shuffling_matrix(shuffling_matrix, mask)
            # Collinear X and Z columns leave dof positive but the fit undefined
            if _rank(design) < design.shape[1]:
                output[index] = 0.0
                continue

            pinv_design = linalg.pinv(design)
            for ih, hypothesis in enumerate(self.hypotheses):
                partition = hypothesis.partition(design)
                shuffled = (shuffling @ partition.Rz @ y)[:, None]
                output[index, ih] = _statistic(
                    shuffled, design, pinv_design,
                    hypothesis, hypothesis.metric(design), partition,
                )[0]
        return output


def make_glm_test(measurements: np.ndarray, design: np.ndarray,
                  hypotheses: Sequence[Hypothesis], extra_columns: Sequence = ()) -> GLMTestBase:
    """Choose the GLM implementation appropriate for the data."""
    nans_in_data = not np.all(np.isfinite(measurements))
    if nans_in_data:
        logger.info("Non-finite values present in data; subjects will be excluded per fixel as needed")
    if extra_columns or nans_in_data:
        if extra_columns:
            logger.info(f"Using variable GLM with {len(extra_columns)} element-wise design column(s)")
        return GLMTestVariable(measurements, design, hypotheses, extra_columns)
    return GLMTestFixed(measurements, design, hypotheses)


@dataclass
class DefaultStats:
    """Descriptive statistics of the unshuffled model.

    Attributes:
        betas: Regression coefficients, shape (factors, fixels).
        abs_effect: Contrast of betas, shape (fixels, hypotheses); NaN for F-tests.
        std_effect: Absolute effect divided by residual standard deviation.
        stdev: Residual standard deviation per fixel.
        cond: Condition number of each fixel's design (variable designs only).
    """
    betas: np.ndarray
    abs_effect: np.ndarray
    std_effect: np.ndarray
    stdev: np.ndarray
    cond: Optional[np.ndarray] = None


def _fit(y: np.ndarray, design: np.ndarray, hypotheses: Sequence[Hypothesis]):
    betas = linalg.pinv(design) @ y
    residuals = y - design @ betas
    dof = design.shape[0] - _rank(design)
    with np.errstate(divide="ignore", invalid="ignore"):
        stdev = np.sqrt(np.sum(residuals ** 2, axis=0) / dof) if dof > 0 else np.full(y.shape[1], np.nan)
    abs_effect = np.full((y.shape[1], len(hypotheses)), np.nan)
    for ih, hypothesis in enumerate(hypotheses):
        if not hypothesis.is_F:
            abs_effect[:, ih] = (hypothesis.matrix @ betas)[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        std_effect = abs_effect / stdev[:, None]
    return betas, abs_effect, std_effect, stdev


def all_stats(glm: GLMTestBase) -> DefaultStats:
    """Betas, effect sizes and residual deviation for the unshuffled data."""
    hypotheses = glm.hypotheses
    if isinstance(glm, GLMTestFixed):
        betas, abs_effect, std_effect, stdev = _fit(glm.y, glm.design, hypotheses)
        return DefaultStats(betas, abs_effect, std_effect, stdev)

    num_factors = glm.num_factors + len(glm.extra_columns)
    betas = np.full((num_factors, glm.num_elements), np.nan)
    abs_effect = np.full((glm.num_elements, len(hypotheses)), np.nan)
    std_effect = np.full((glm.num_elements, len(hypotheses)), np.nan)
    stdev = np.full(glm.num_elements, np.nan)
    cond = np.full(glm.num_elements, np.nan)
    for index in range(glm.num_elements):
        design = glm.default_design(index)
        mask = glm.element_mask(index, design)
        design = design[mask]
        if not design.shape[0]:
            continue
        y = glm.y[mask, index][:, None]
        b, a, s, sd = _fit(y, design, hypotheses)
        betas[:, index] = b[:, 0]
        abs_effect[index] = a[0]
        std_effect[index] = s[0]
        stdev[index] = sd[0]
        cond[index] = np.linalg.cond(design)
    return DefaultStats(betas, abs_effect, std_effect, stdev, cond)
