"""Connectivity matrix pipeline orchestration."""

import logging
from pathlib import Path
from typing import Optional

import numpy as np

from fixelcfe.config.defaults import ConnectivityConfig
from fixelcfe.connectivity.mapping import (
    FixelTemplate,
    generate,
    load_fixel_data_file,
    load_streamlines,
)
from fixelcfe.connectivity.matrix import normalise_matrix, save_matrix
from fixelcfe.utils.logging import timer, log_section


def run_connectivity(
    fixel_directory: Path,
    tracks: Path,
    output: Path,
    config: Optional[ConnectivityConfig] = None,
    mask: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Build, normalise and save the fixel-fixel connectivity matrix.

    Args:
        fixel_directory: Fixel template directory (index and directions images).
        tracks: Tractogram file.
        output: Output sparse matrix text file.
        config: Construction parameters.
        mask: Optional fixel mask data file; streamlines only contribute
            at fixels inside the mask.
        logger: Logger instance. If None, creates one.

    Returns:
        Path of the saved matrix.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    config = config or ConnectivityConfig()
    config.validate()

    with timer(logger, "Fixel-fixel connectivity matrix"):
        log_section(logger, "Inputs")
        mask_values = None
        if mask is not None:
            mask_values = load_fixel_data_file(mask) > 0.5
            logger.info(f"Fixel mask: {int(mask_values.sum())} of {mask_values.size} fixels")
        template = FixelTemplate.from_directory(fixel_directory, mask_values)
        streamlines = load_streamlines(tracks)

        log_section(logger, "Construction")
        with timer(logger, "Mapping streamlines to fixels"):
            raw = generate(
                template, streamlines,
                angular_threshold=config.angular_threshold,
                n_jobs=config.n_jobs,
                batch_size=config.batch_size,
                max_pending_batches=config.max_pending_batches,
            )
        visits = np.array([adjacency.total_visits for adjacency in raw])
        logger.debug(f"Maximum fixel streamline count: {int(visits.max(initial=0))}")

        log_section(logger, "Normalisation")
        graph = normalise_matrix(raw, config.connectivity_threshold, n_jobs=config.n_jobs)

        return save_matrix(graph, output)
