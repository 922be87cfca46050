"""Fixel-based statistics pipeline orchestration.

This module orchestrates connectivity-based fixel enhancement with
non-parametric permutation testing, from subject data files to per-fixel
statistic and p-value images.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import nibabel as nib
import numpy as np

from fixelcfe.config.defaults import StatsConfig
from fixelcfe.config.loader import save_config
from fixelcfe.connectivity.mapping import find_fixel_file, load_fixel_data_file
from fixelcfe.connectivity.matrix import IndexRemapper, load_matrix
from fixelcfe.io.imports import CohortDataImport, DataContext
from fixelcfe.io.readers import load_design_matrix
from fixelcfe.io.writers import FixelOutputWriter
from fixelcfe.statistics.cfe import CFE, prepare_cfe_graph
from fixelcfe.statistics.glm import (
    all_stats,
    check_design,
    check_hypotheses,
    load_hypotheses,
    make_glm_test,
)
from fixelcfe.statistics.permutation import PermutationEngine
from fixelcfe.statistics.shuffle import Shuffler, load_permutations_file
from fixelcfe.utils.exceptions import ConsistencyError
from fixelcfe.utils.logging import log_section, log_warning_box, timer


def _count_template_fixels(fixel_directory: Path) -> int:
    img = nib.load(str(find_fixel_file(fixel_directory, "directions")))
    return int(img.shape[0])


def _load_remapper(fixel_directory: Path, mask: Optional[Path],
                   logger: logging.Logger) -> IndexRemapper:
    num_fixels = _count_template_fixels(fixel_directory)
    if mask is None:
        return IndexRemapper(num_fixels)
    mask_values = load_fixel_data_file(mask) > 0.5
    if mask_values.size != num_fixels:
        raise ConsistencyError(
            f"Fixel mask has {mask_values.size} fixels; template has {num_fixels}"
        )
    remapper = IndexRemapper(mask_values)
    logger.info(f"Fixel mask contains {remapper.num_internal} of {num_fixels} fixels")
    return remapper


def run_stats(
    fixel_directory: Path,
    subjects: Path,
    design: Path,
    contrast: Path,
    connectivity: Path,
    output_dir: Path,
    config: Optional[StatsConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, List[Path]]:
    """Run the complete fixel-based statistical analysis.

    This function orchestrates:
    1. Loading the fixel mask, subject data, design and hypotheses
    2. Loading the connectivity matrix and deriving CFE weights
    3. Descriptive statistics of the default permutation
    4. Optional non-stationarity correction
    5. Permutation testing and FWE-corrected p-values
    6. Saving all outputs as fixel images with JSON sidecars

    Args:
        fixel_directory: Fixel template directory holding the subject data.
        subjects: Text file listing one subject data file per line.
        design: Design matrix file.
        contrast: Contrast matrix file.
        connectivity: Fixel-fixel connectivity matrix file.
        output_dir: Output fixel directory.
        config: Analysis parameters.
        logger: Logger instance. If None, creates one.

    Returns:
        Dictionary with keys mapping to lists of output file paths:
            - 'descriptive': betas, effect sizes, standard deviation
            - 'statistics': t/F statistics and enhanced statistics
            - 'pvalues': uncorrected and FWE-corrected p-values
            - 'null': null distributions and contributions

    Raises:
        ConsistencyError: If the inputs do not match each other.
        StatisticalError: If the design or hypotheses are invalid.
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    config = config or StatsConfig()
    config.validate()

    fixel_directory = Path(fixel_directory)
    output_dir = Path(output_dir)
    outputs = {'descriptive': [], 'statistics': [], 'pvalues': [], 'null': []}

    with timer(logger, "Fixel-based statistical analysis"):
        # === Step 1: Inputs ===
        log_section(logger, "Inputs")

        remapper = _load_remapper(fixel_directory, config.mask, logger)
        context = DataContext(fixel_directory)
        importer = CohortDataImport.from_file(subjects, context, remapper)
        num_subjects = len(importer)

        design_matrix = load_design_matrix(design)
        if design_matrix.shape[0] != num_subjects:
            raise ConsistencyError(
                f"Number of input files ({num_subjects}) does not match "
                f"number of rows in design matrix ({design_matrix.shape[0]})"
            )

        extra_columns = []
        for column_path in config.columns:
            column = CohortDataImport.from_file(column_path, context, remapper)
            if len(column) != num_subjects:
                raise ConsistencyError(
                    f"Number of subjects in element-wise column file {column_path} "
                    f"({len(column)}) does not match design matrix ({num_subjects})"
                )
            extra_columns.append(column)
        if extra_columns:
            logger.info(f"Number of element-wise design matrix columns: {len(extra_columns)}")

        hypotheses = load_hypotheses(contrast, config.ftests, config.fonly)
        check_hypotheses(hypotheses, design_matrix.shape[1] + len(extra_columns))
        check_design(design_matrix, len(extra_columns))

        # === Step 2: Connectivity ===
        log_section(logger, "Connectivity")

        graph = load_matrix(connectivity, None if remapper.is_default() else remapper)
        if len(graph) != remapper.num_internal:
            raise ConsistencyError(
                f"Connectivity matrix has {len(graph)} fixels; "
                f"analysis has {remapper.num_internal}"
            )
        num_disconnected = len(graph.disconnected())
        if num_disconnected:
            log_warning_box(logger, f"{num_disconnected} fixels have no connectivity")
            logger.warning("These fixels cannot be enhanced or reach significance")
        cfe_graph = prepare_cfe_graph(graph, config.cfe_c, config.cfe_legacy)
        del graph
        cfe = CFE(cfe_graph, config.cfe_dh, config.cfe_e, config.cfe_h)

        # === Step 3: Default permutation ===
        log_section(logger, "Descriptive Statistics")

        measurements = importer.matrix()
        glm = make_glm_test(measurements, design_matrix, hypotheses, extra_columns)

        metadata = {
            'CFE_dh': config.cfe_dh,
            'CFE_e': config.cfe_e,
            'CFE_h': config.cfe_h,
            'CFE_c': config.cfe_c,
            'CFE_legacy': config.cfe_legacy,
            'Hypotheses': {h.name: h.matrix.tolist() for h in hypotheses},
        }
        writer = FixelOutputWriter(output_dir, remapper, metadata)
        writer.copy_template(fixel_directory)
        save_config(config, output_dir / "config.json")

        multiple = len(hypotheses) > 1

        def postfix(index: int) -> str:
            return f"_{hypotheses[index].name}" if multiple else ""

        with timer(logger, "Calculating basic properties of default permutation"):
            default_stats = all_stats(glm)
        for i in range(default_stats.betas.shape[0]):
            outputs['descriptive'].append(writer.write(f"beta{i}", default_stats.betas[i]))
        for ih, hypothesis in enumerate(hypotheses):
            if hypothesis.is_F:
                continue
            outputs['descriptive'].append(
                writer.write(f"abs_effect{postfix(ih)}", default_stats.abs_effect[:, ih]))
            outputs['descriptive'].append(
                writer.write(f"std_effect{postfix(ih)}", default_stats.std_effect[:, ih]))
        outputs['descriptive'].append(writer.write("std_dev", default_stats.stdev))
        if default_stats.cond is not None:
            outputs['descriptive'].append(writer.write("cond", default_stats.cond))

        # === Step 4: Inference ===
        log_section(logger, "Permutation Testing")

        shuffler = None
        if not config.notest:
            permutations = None
            if config.permutations_file is not None:
                permutations = load_permutations_file(config.permutations_file, num_subjects)
            shuffler = Shuffler(num_subjects, config.n_shuffles, config.errors,
                                seed=config.seed, include_default=True,
                                permutations=permutations)

        nonstationarity_shuffler = None
        if config.nonstationarity:
            nonstationarity_shuffler = Shuffler(
                num_subjects, config.n_shuffles_nonstationarity, config.errors,
                seed=config.seed, include_default=False,
            )

        engine = PermutationEngine(
            glm, cfe, shuffler, nonstationarity_shuffler,
            skew=config.skew_nonstationarity, strong=config.strong, n_jobs=config.n_jobs,
        )
        result = engine.run()

        # === Step 5: Outputs ===
        log_section(logger, "Outputs")

        for ih, hypothesis in enumerate(hypotheses):
            stat_name = "Fvalue" if hypothesis.is_F else "tvalue"
            outputs['statistics'].append(
                writer.write(f"{stat_name}{postfix(ih)}", result.default_stats[:, ih]))
            outputs['statistics'].append(
                writer.write(f"cfe{postfix(ih)}", result.default_enhanced[:, ih]))
            if result.empirical_enhanced is not None:
                outputs['statistics'].append(
                    writer.write(f"cfe_empirical{postfix(ih)}", result.empirical_enhanced[:, ih]))

        if result.null_distribution is not None:
            for ih in range(len(hypotheses)):
                outputs['pvalues'].append(
                    writer.write(f"uncorrected_pvalue{postfix(ih)}", result.uncorrected_pvalues[:, ih]))
                outputs['pvalues'].append(
                    writer.write(f"fwe_pvalue{postfix(ih)}", result.fwe_pvalues[:, ih]))
            if config.strong:
                outputs['null'].append(
                    writer.write_vector("null_dist", result.null_distribution[:, 0]))
                outputs['null'].append(
                    writer.write("null_contributions", result.null_contributions[:, 0]))
            else:
                for ih in range(len(hypotheses)):
                    outputs['null'].append(
                        writer.write_vector(f"null_dist{postfix(ih)}", result.null_distribution[:, ih]))
                    outputs['null'].append(
                        writer.write(f"null_contributions{postfix(ih)}",
                                     result.null_contributions[:, ih].astype(np.float64)))

    return outputs
