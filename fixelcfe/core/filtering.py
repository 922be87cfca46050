"""Connectivity-based filtering of fixel data files."""

import logging
from pathlib import Path
from typing import Optional

import nibabel as nib
import numpy as np

from fixelcfe.config.defaults import SmoothingConfig
from fixelcfe.connectivity.filters import (
    DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD,
    DEFAULT_CONNECT_VALUE_THRESHOLD,
    build_smoothing_matrix,
    connected_components,
    smooth,
)
from fixelcfe.connectivity.mapping import FixelTemplate, load_fixel_data_file
from fixelcfe.connectivity.matrix import load_matrix
from fixelcfe.io.writers import save_nifti_with_sidecar
from fixelcfe.utils.exceptions import ConsistencyError
from fixelcfe.utils.logging import timer


def _save_fixel_data(values: np.ndarray, output: Path, metadata: dict) -> Path:
    output = Path(output)
    if not (output.name.endswith(".nii") or output.name.endswith(".nii.gz")):
        output = output.with_name(output.name + ".nii.gz")
    img = nib.Nifti1Image(values.reshape(-1, 1, 1).astype(np.float32), affine=np.eye(4))
    save_nifti_with_sidecar(img, output, metadata)
    return output


def _load_inputs(connectivity: Path, input_data: Path):
    graph = load_matrix(connectivity)
    values = load_fixel_data_file(input_data)
    if values.size != len(graph):
        raise ConsistencyError(
            f"Size of fixel data file ({values.size}) does not match "
            f"fixel connectivity matrix ({len(graph)})"
        )
    return graph, values


def run_smoothing(
    fixel_directory: Path,
    connectivity: Path,
    input_data: Path,
    output: Path,
    config: Optional[SmoothingConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Smooth a fixel data file using connectivity and spatial proximity."""
    if logger is None:
        logger = logging.getLogger(__name__)
    config = config or SmoothingConfig()
    config.validate()

    graph, values = _load_inputs(connectivity, input_data)
    template = FixelTemplate.from_directory(fixel_directory)
    if template.num_fixels != len(graph):
        raise ConsistencyError(
            f"Fixel template has {template.num_fixels} fixels; "
            f"connectivity matrix has {len(graph)}"
        )

    with timer(logger, f"Smoothing fixel data (FWHM {config.fwhm} mm)"):
        smoothing_matrix = build_smoothing_matrix(
            graph, template.positions(), config.fwhm, config.threshold
        )
        smoothed = smooth(values, smoothing_matrix)

    return _save_fixel_data(smoothed, output, {
        'Filter': 'smooth',
        'FWHM': config.fwhm,
        'Threshold': config.threshold,
        'Source': str(input_data),
    })


def run_connect(
    connectivity: Path,
    input_data: Path,
    output: Path,
    value_threshold: float = DEFAULT_CONNECT_VALUE_THRESHOLD,
    connectivity_threshold: float = DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Label connected clusters of supra-threshold fixels."""
    if logger is None:
        logger = logging.getLogger(__name__)

    graph, values = _load_inputs(connectivity, input_data)
    with timer(logger, "Labelling connected fixel clusters"):
        labels = connected_components(values, graph, value_threshold, connectivity_threshold)
    logger.info(f"Number of clusters: {int(labels.max(initial=0))}")

    return _save_fixel_data(labels, output, {
        'Filter': 'connect',
        'ValueThreshold': value_threshold,
        'ConnectivityThreshold': connectivity_threshold,
        'Source': str(input_data),
    })
