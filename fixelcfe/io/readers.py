"""File readers for design, contrast and subject list files."""

from pathlib import Path
from typing import List, Union

import numpy as np
import pandas as pd

from fixelcfe.utils.exceptions import ConsistencyError


def load_matrix_file(path: Union[str, Path]) -> np.ndarray:
    """Load a numeric text matrix (whitespace- or comma-delimited).

    Lines starting with ``#`` are ignored. A single row or column is
    returned as a 2D array.

    Raises:
        FileNotFoundError: If the file does not exist
        ConsistencyError: If the file contains no values or non-numeric entries
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Matrix file not found: {path}")

    text = path.read_text()
    sep = "," if "," in text else r"\s+"
    try:
        df = pd.read_csv(path, sep=sep, header=None, comment="#",
                         skip_blank_lines=True, skipinitialspace=True, engine="python")
    except pd.errors.EmptyDataError as e:
        raise ConsistencyError(f"Matrix file is empty: {path}") from e

    df = df.dropna(axis=1, how="all")
    try:
        matrix = df.to_numpy(dtype=np.float64)
    except ValueError as e:
        raise ConsistencyError(f"Matrix file contains non-numeric entries: {path}") from e
    if matrix.size == 0:
        raise ConsistencyError(f"Matrix file is empty: {path}")
    return matrix


def load_design_matrix(path: Union[str, Path]) -> np.ndarray:
    """Load a design matrix (subjects x factors).

    Non-finite values are not permitted in the fixed design; per-fixel
    covariates with missing values must be supplied as element-wise columns.
    """
    design = load_matrix_file(path)
    if not np.all(np.isfinite(design)):
        raise ConsistencyError(f"Design matrix contains non-finite values: {path}")
    return design


def load_subject_list(path: Union[str, Path]) -> List[str]:
    """Read one subject data file name per line, skipping blanks and comments."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Subject list file not found: {path}")
    subjects = []
    with path.open() as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                subjects.append(line)
    if not subjects:
        raise ConsistencyError(f"Subject list file is empty: {path}")
    return subjects
