"""Default configuration dataclasses for fixelcfe."""

from dataclasses import dataclass, field
from typing import List, Optional
from pathlib import Path


DEFAULT_ANGLE_THRESHOLD = 45.0
DEFAULT_CONNECTIVITY_THRESHOLD = 0.01
DEFAULT_SMOOTHING_FWHM = 10.0

DEFAULT_CFE_DH = 0.1
DEFAULT_CFE_E = 2.0
DEFAULT_CFE_H = 3.0
DEFAULT_CFE_C = 0.5
DEFAULT_EMPIRICAL_SKEW = 1.0

DEFAULT_NUMBER_SHUFFLES = 5000
DEFAULT_NUMBER_SHUFFLES_NONSTATIONARITY = 5000

ERROR_TYPES = ["ee", "ise", "both"]


@dataclass
class ConnectivityConfig:
    """Configuration for fixel-fixel connectivity matrix construction.

    Attributes:
        angular_threshold: Maximum angle in degrees between a streamline
            tangent and a fixel direction for the streamline to be assigned
            to that fixel.
        connectivity_threshold: Fraction of a fixel's streamlines that must
            also traverse a neighbour for the connection to be retained.
        n_jobs: Number of threads mapping streamlines to fixels.
        batch_size: Number of streamlines mapped per task.
        max_pending_batches: Upper bound on mapped batches waiting to be
            inserted into the matrix.
    """
    angular_threshold: float = DEFAULT_ANGLE_THRESHOLD
    connectivity_threshold: float = DEFAULT_CONNECTIVITY_THRESHOLD
    n_jobs: int = 1
    batch_size: int = 1024
    max_pending_batches: int = 8

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        from fixelcfe.config.validator import ConfigValidator

        validator = ConfigValidator()
        if validator.validate_range(self.angular_threshold, 0.0, 90.0, "angular_threshold"):
            if self.angular_threshold == 0.0:
                validator.errors.append("angular_threshold must be greater than 0")
        validator.validate_fraction(self.connectivity_threshold, "connectivity_threshold")
        validator.validate_n_jobs(self.n_jobs)
        validator.validate_positive(self.batch_size, "batch_size")
        validator.validate_positive(self.max_pending_batches, "max_pending_batches")
        validator.raise_if_errors()


@dataclass
class SmoothingConfig:
    """Configuration for connectivity-based fixel data smoothing.

    Attributes:
        fwhm: Full width at half maximum of the spatial Gaussian kernel (mm).
        threshold: Minimum smoothing weight for a connection to be kept.
    """
    fwhm: float = DEFAULT_SMOOTHING_FWHM
    threshold: float = DEFAULT_CONNECTIVITY_THRESHOLD

    def validate(self) -> None:
        from fixelcfe.config.validator import ConfigValidator

        validator = ConfigValidator()
        validator.validate_positive(self.fwhm, "fwhm")
        validator.validate_fraction(self.threshold, "threshold")
        validator.raise_if_errors()


@dataclass
class StatsConfig:
    """Configuration for CFE-enhanced permutation inference.

    Attributes:
        cfe_dh: Height increment of the CFE integral.
        cfe_e: CFE extent exponent.
        cfe_h: CFE height exponent.
        cfe_c: CFE connectivity exponent.
        cfe_legacy: Use raw thresholded connectivity weights rather than the
            intrinsically normalised CFE expression.
        n_shuffles: Number of shuffles (including the default permutation).
        errors: Error model: "ee" (permutations), "ise" (sign-flips) or "both".
        seed: Random seed for shuffle generation.
        permutations_file: Optional text file of explicit permutations.
        nonstationarity: Perform non-stationarity correction.
        n_shuffles_nonstationarity: Shuffles used to build the empirical
            enhanced statistic.
        skew_nonstationarity: Skew used when averaging the empirical statistic.
        strong: Strong FWE control across all hypotheses.
        notest: Skip permutation testing entirely.
        n_jobs: Number of worker threads.
        mask: Optional fixel mask data file.
        columns: Element-wise design matrix column files (one subject list each).
        ftests: Optional F-test definition file.
        fonly: Only test the F-tests.
    """

    # CFE parameters
    cfe_dh: float = DEFAULT_CFE_DH
    cfe_e: float = DEFAULT_CFE_E
    cfe_h: float = DEFAULT_CFE_H
    cfe_c: float = DEFAULT_CFE_C
    cfe_legacy: bool = False

    # Shuffling
    n_shuffles: int = DEFAULT_NUMBER_SHUFFLES
    errors: str = "ee"
    seed: Optional[int] = None
    permutations_file: Optional[Path] = None

    # Non-stationarity correction
    nonstationarity: bool = False
    n_shuffles_nonstationarity: int = DEFAULT_NUMBER_SHUFFLES_NONSTATIONARITY
    skew_nonstationarity: float = DEFAULT_EMPIRICAL_SKEW

    # Inference
    strong: bool = False
    notest: bool = False
    n_jobs: int = 1

    # GLM inputs
    mask: Optional[Path] = None
    columns: List[Path] = field(default_factory=list)
    ftests: Optional[Path] = None
    fonly: bool = False

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        from fixelcfe.config.validator import ConfigValidator

        validator = ConfigValidator()

        validator.validate_range(self.cfe_dh, 0.001, 1.0, "cfe_dh")
        validator.validate_range(self.cfe_e, 0.0, 100.0, "cfe_e")
        validator.validate_range(self.cfe_h, 0.0, 100.0, "cfe_h")
        validator.validate_range(self.cfe_c, 0.0, 100.0, "cfe_c")

        validator.validate_positive(self.n_shuffles, "n_shuffles")
        validator.validate_positive(self.n_shuffles_nonstationarity, "n_shuffles_nonstationarity")
        validator.validate_positive(self.skew_nonstationarity, "skew_nonstationarity")
        validator.validate_choice(self.errors, ERROR_TYPES, "errors")
        validator.validate_n_jobs(self.n_jobs)

        for name in ("mask", "ftests", "permutations_file"):
            path = getattr(self, name)
            if path is not None:
                validator.validate_file_exists(path, name)
        for column in self.columns:
            validator.validate_file_exists(column, "columns")

        if self.fonly and self.ftests is None:
            validator.errors.append("fonly requires an F-test file (ftests)")

        if self.permutations_file is not None and self.errors != "ee":
            validator.errors.append(
                "An explicit permutations file can only be used with errors='ee'"
            )

        validator.raise_if_errors()
