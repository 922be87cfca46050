"""Command-line interface for fixelcfe."""

import argparse
import textwrap
from pathlib import Path

from fixelcfe.config.defaults import (
    DEFAULT_ANGLE_THRESHOLD,
    DEFAULT_CFE_C,
    DEFAULT_CFE_DH,
    DEFAULT_CFE_E,
    DEFAULT_CFE_H,
    DEFAULT_CONNECTIVITY_THRESHOLD,
    DEFAULT_EMPIRICAL_SKEW,
    DEFAULT_NUMBER_SHUFFLES,
    DEFAULT_NUMBER_SHUFFLES_NONSTATIONARITY,
    DEFAULT_SMOOTHING_FWHM,
    ERROR_TYPES,
)
from fixelcfe.connectivity.filters import (
    DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD,
    DEFAULT_CONNECT_VALUE_THRESHOLD,
)
from fixelcfe.core.version import __version__


# ANSI color codes for terminal output
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'
    END = '\033[0m'


class ColoredHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom formatter with colored output and better organization."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def _format_usage(self, usage, actions, groups, prefix):
        if prefix is None:
            prefix = f'{Colors.BOLD}Usage:{Colors.END} '
        return super()._format_usage(usage, actions, groups, prefix)

    def start_section(self, heading):
        if heading:
            heading = f'{Colors.BOLD}{Colors.CYAN}{heading}{Colors.END}'
        super().start_section(heading)


def _add_general_options(parser: argparse.ArgumentParser) -> None:
    general = parser.add_argument_group(f'{Colors.BOLD}General Options{Colors.END}')
    general.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output (DEBUG level logging).",
    )
    general.add_argument(
        "--log-file",
        type=Path,
        metavar="FILE",
        dest="log_file",
        help="Also write log messages to this file.",
    )


def _add_connectivity_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "connectivity",
        help="Build the fixel-fixel connectivity matrix from a tractogram.",
        formatter_class=ColoredHelpFormatter,
        description=textwrap.dedent("""
        Map every streamline onto the fixels it traverses, count streamline
        co-occurrence between fixels, and save the thresholded connectivity
        matrix as a sparse text file.
        """),
    )
    parser.add_argument("fixel_directory", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory (index and directions images).")
    parser.add_argument("tracks", type=Path, metavar="TRACKS",
                        help="Tractogram (.tck, .trk) in scanner coordinates.")
    parser.add_argument("output", type=Path, metavar="MATRIX_OUT",
                        help="Output connectivity matrix text file.")
    options = parser.add_argument_group(f'{Colors.BOLD}Connectivity Options{Colors.END}')
    options.add_argument(
        "--angle",
        type=float,
        dest="angular_threshold",
        help=f"Maximum angle (degrees) between a streamline tangent and a fixel "
             f"direction. Default: {DEFAULT_ANGLE_THRESHOLD}.",
    )
    options.add_argument(
        "--threshold",
        type=float,
        dest="connectivity_threshold",
        help=f"Connectivity threshold (fraction of shared streamlines). "
             f"Default: {DEFAULT_CONNECTIVITY_THRESHOLD}.",
    )
    options.add_argument(
        "--mask",
        type=Path,
        metavar="FILE",
        help="Fixel mask; streamlines only contribute at fixels inside it.",
    )
    options.add_argument(
        "--n-jobs",
        type=int,
        dest="n_jobs",
        help="Number of threads mapping streamlines. Default: 1.",
    )
    options.add_argument("-c", "--config", type=Path, metavar="FILE",
                         help="Configuration file (.json, .yaml, or .yml).")
    _add_general_options(parser)


def _add_stats_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "stats",
        help="Fixel-based analysis using CFE and non-parametric permutation testing.",
        formatter_class=ColoredHelpFormatter,
        description=textwrap.dedent(f"""
        Fit a general linear model at every fixel, enhance the test statistic
        with connectivity-based fixel enhancement (CFE) and compute
        family-wise error corrected p-values by permutation testing.

        {Colors.BOLD}Example config (YAML):{Colors.END}
          cfe_dh: 0.1
          cfe_e: 2.0
          cfe_h: 3.0
          n_shuffles: 5000
          errors: ee
          seed: 42
          n_jobs: 8
        """),
    )
    parser.add_argument("fixel_directory", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory containing the subject data files.")
    parser.add_argument("subjects", type=Path, metavar="SUBJECTS",
                        help="Text file listing one subject data file per line.")
    parser.add_argument("design", type=Path, metavar="DESIGN",
                        help="Design matrix text file (one row per subject).")
    parser.add_argument("contrast", type=Path, metavar="CONTRAST",
                        help="Contrast matrix text file (one t-test per row).")
    parser.add_argument("connectivity", type=Path, metavar="MATRIX",
                        help="Fixel-fixel connectivity matrix file.")
    parser.add_argument("output_dir", type=Path, metavar="OUTPUT_DIR",
                        help="Output fixel directory.")

    cfe = parser.add_argument_group(f'{Colors.BOLD}CFE Options{Colors.END}')
    cfe.add_argument("--cfe-dh", type=float, dest="cfe_dh",
                     help=f"Height increment of the CFE integral. Default: {DEFAULT_CFE_DH}.")
    cfe.add_argument("--cfe-e", type=float, dest="cfe_e",
                     help=f"CFE extent exponent. Default: {DEFAULT_CFE_E}.")
    cfe.add_argument("--cfe-h", type=float, dest="cfe_h",
                     help=f"CFE height exponent. Default: {DEFAULT_CFE_H}.")
    cfe.add_argument("--cfe-c", type=float, dest="cfe_c",
                     help=f"CFE connectivity exponent. Default: {DEFAULT_CFE_C}.")
    cfe.add_argument("--cfe-legacy", action="store_true", default=None, dest="cfe_legacy",
                     help="Use the legacy (non-normalised) CFE expression.")

    inference = parser.add_argument_group(f'{Colors.BOLD}Inference Options{Colors.END}')
    inference.add_argument("--n-shuffles", type=int, dest="n_shuffles",
                           help=f"Number of shuffles. Default: {DEFAULT_NUMBER_SHUFFLES}.")
    inference.add_argument("--errors", choices=ERROR_TYPES,
                           help="Error model: exchangeable (ee), independent symmetric (ise) "
                                "or both. Default: ee.")
    inference.add_argument("--seed", type=int, help="Random seed for shuffle generation.")
    inference.add_argument("--permutations", type=Path, metavar="FILE", dest="permutations_file",
                           help="Text file of explicit permutations.")
    inference.add_argument("--nonstationarity", action="store_true", default=None,
                           help="Perform non-stationarity correction.")
    inference.add_argument("--n-shuffles-nonstationarity", type=int, dest="n_shuffles_nonstationarity",
                           help=f"Shuffles for the empirical statistic. "
                                f"Default: {DEFAULT_NUMBER_SHUFFLES_NONSTATIONARITY}.")
    inference.add_argument("--skew-nonstationarity", type=float, dest="skew_nonstationarity",
                           help=f"Skew of the empirical statistic. Default: {DEFAULT_EMPIRICAL_SKEW}.")
    inference.add_argument("--strong", action="store_true", default=None,
                           help="Strong FWE control across all hypotheses.")
    inference.add_argument("--notest", action="store_true", default=None,
                           help="Do not perform permutation testing.")

    glm = parser.add_argument_group(f'{Colors.BOLD}GLM Options{Colors.END}')
    glm.add_argument("--mask", type=Path, metavar="FILE", help="Fixel mask.")
    glm.add_argument("--column", type=Path, metavar="FILE", action="append", dest="columns",
                     help="Element-wise design column: a subject list file. Can be repeated.")
    glm.add_argument("--ftests", type=Path, metavar="FILE",
                     help="F-test matrix selecting rows of the contrast matrix.")
    glm.add_argument("--fonly", action="store_true", default=None,
                     help="Only test the F-tests.")

    general = parser.add_argument_group(f'{Colors.BOLD}Execution Options{Colors.END}')
    general.add_argument("--n-jobs", type=int, dest="n_jobs", help="Number of worker threads.")
    general.add_argument("-c", "--config", type=Path, metavar="FILE",
                         help="Configuration file (.json, .yaml, or .yml). Command-line "
                              "arguments override config file settings.")
    _add_general_options(parser)


def _add_smooth_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "smooth",
        help="Smooth fixel data using connectivity and spatial proximity.",
        formatter_class=ColoredHelpFormatter,
    )
    parser.add_argument("fixel_directory", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory.")
    parser.add_argument("connectivity", type=Path, metavar="MATRIX",
                        help="Fixel-fixel connectivity matrix file.")
    parser.add_argument("input_data", type=Path, metavar="IN_DATA", help="Input fixel data file.")
    parser.add_argument("output", type=Path, metavar="OUT_DATA", help="Output fixel data file.")
    parser.add_argument("--fwhm", type=float,
                        help=f"Smoothing kernel FWHM (mm). Default: {DEFAULT_SMOOTHING_FWHM}.")
    parser.add_argument("--threshold", type=float,
                        help=f"Minimum smoothing weight. Default: {DEFAULT_CONNECTIVITY_THRESHOLD}.")
    _add_general_options(parser)


def _add_connect_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "connect",
        help="Label connected clusters of supra-threshold fixels.",
        formatter_class=ColoredHelpFormatter,
    )
    parser.add_argument("connectivity", type=Path, metavar="MATRIX",
                        help="Fixel-fixel connectivity matrix file.")
    parser.add_argument("input_data", type=Path, metavar="IN_DATA", help="Input fixel data file.")
    parser.add_argument("output", type=Path, metavar="OUT_DATA", help="Output cluster label file.")
    parser.add_argument("--value-threshold", type=float, dest="value_threshold",
                        default=DEFAULT_CONNECT_VALUE_THRESHOLD,
                        help="Fixel value threshold. Default: %(default)s.")
    parser.add_argument("--connectivity-threshold", type=float, dest="connectivity_threshold",
                        default=DEFAULT_CONNECT_CONNECTIVITY_THRESHOLD,
                        help="Connectivity threshold. Default: %(default)s.")
    _add_general_options(parser)


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance with one sub-command per tool.
    """
    description = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}fixelcfe v{__version__}{Colors.END}
    Connectivity-based fixel enhancement and permutation testing.

    {Colors.BOLD}Workflow:{Colors.END}
      1. {Colors.CYAN}connectivity{Colors.END}  Build the fixel-fixel connectivity matrix from a tractogram
      2. {Colors.CYAN}smooth{Colors.END}        (optional) Smooth subject fixel data along connectivity
      3. {Colors.CYAN}stats{Colors.END}         GLM + CFE + permutation testing
      4. {Colors.CYAN}connect{Colors.END}       (optional) Label clusters in a result map
    """)
    epilog = textwrap.dedent(f"""
    {Colors.BOLD}Examples:{Colors.END}
      {Colors.YELLOW}# Build the connectivity matrix with 8 threads{Colors.END}
      fixelcfe connectivity template/ tracks.tck matrix.txt --n-jobs 8

      {Colors.YELLOW}# Two-group comparison with 5000 shuffles{Colors.END}
      fixelcfe stats template/ files.txt design.txt contrast.txt matrix.txt stats/ --seed 42
    """)

    parser = argparse.ArgumentParser(
        prog="fixelcfe",
        description=description,
        epilog=epilog,
        formatter_class=ColoredHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fixelcfe {__version__}",
        help="Show program version and exit.",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    _add_connectivity_parser(subparsers)
    _add_stats_parser(subparsers)
    _add_smooth_parser(subparsers)
    _add_connect_parser(subparsers)
    return parser


def cli_overrides(args: argparse.Namespace, fields) -> dict:
    """Arguments given on the command line that correspond to config fields."""
    values = vars(args)
    return {name: values[name] for name in fields if values.get(name) is not None}
