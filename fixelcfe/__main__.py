"""Main entry point for fixelcfe."""

import sys
import logging
from dataclasses import fields

from fixelcfe.cli import create_parser, cli_overrides
from fixelcfe.utils.logging import setup_logging, log_config
from fixelcfe.config.defaults import ConnectivityConfig, SmoothingConfig, StatsConfig
from fixelcfe.config.loader import load_config_file, merge_configs, config_from_dict
from fixelcfe.core.connectivity import run_connectivity
from fixelcfe.core.filtering import run_smoothing, run_connect
from fixelcfe.core.stats import run_stats
from fixelcfe.core.version import __version__


def _build_config(args, config_class, logger: logging.Logger):
    """Load the config file (if any) and apply command-line overrides."""
    config_path = getattr(args, 'config', None)
    if config_path:
        logger.info(f"Loading configuration from: {config_path}")
        base = load_config_file(config_path)
    else:
        logger.info("Using default configuration")
        base = {}
    names = [f.name for f in fields(config_class)]
    config = config_from_dict(merge_configs(base, cli_overrides(args, names)), config_class)
    config.validate()
    return config


def main(argv=None):
    """Main entry point for fixelcfe.

    Parses command-line arguments and runs the requested sub-command.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    log_file = str(args.log_file) if args.log_file else None
    logger = setup_logging(verbose=args.verbose, log_file=log_file)

    logger.info("=" * 60)
    logger.info(f"fixelcfe v{__version__}")
    logger.info(f"Command: {args.command}")
    logger.info("=" * 60)

    try:
        if args.command == "connectivity":
            config = _build_config(args, ConnectivityConfig, logger)
            log_config(logger, vars(config))
            output = run_connectivity(
                fixel_directory=args.fixel_directory,
                tracks=args.tracks,
                output=args.output,
                config=config,
                mask=args.mask,
                logger=logger,
            )
            logger.info(f"Connectivity matrix written to: {output}")

        elif args.command == "stats":
            config = _build_config(args, StatsConfig, logger)
            log_config(logger, vars(config))
            outputs = run_stats(
                fixel_directory=args.fixel_directory,
                subjects=args.subjects,
                design=args.design,
                contrast=args.contrast,
                connectivity=args.connectivity,
                output_dir=args.output_dir,
                config=config,
                logger=logger,
            )
            total = sum(len(paths) for paths in outputs.values())
            logger.info(f"{total} output files written to: {args.output_dir}")

        elif args.command == "smooth":
            config = _build_config(args, SmoothingConfig, logger)
            output = run_smoothing(
                fixel_directory=args.fixel_directory,
                connectivity=args.connectivity,
                input_data=args.input_data,
                output=args.output,
                config=config,
                logger=logger,
            )
            logger.info(f"Smoothed fixel data written to: {output}")

        else:  # connect
            output = run_connect(
                connectivity=args.connectivity,
                input_data=args.input_data,
                output=args.output,
                value_threshold=args.value_threshold,
                connectivity_threshold=args.connectivity_threshold,
                logger=logger,
            )
            logger.info(f"Cluster labels written to: {output}")

        logger.info("=" * 60)
        logger.info("Analysis completed successfully!")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"Analysis failed: {e}")
        if args.verbose:
            logger.exception("Full traceback:")
        sys.exit(1)


if __name__ == "__main__":
    main()
