"""Utility functions for fixelcfe."""

from fixelcfe.utils.logging import setup_logging, timer, log_section, log_config, log_warning_box
from fixelcfe.utils.exceptions import (
    FixelCFEError,
    ConfigurationError,
    FormatError,
    ConsistencyError,
    ConnectivityError,
    StatisticalError,
)

__all__ = [
    # Logging
    "setup_logging",
    "timer",
    "log_section",
    "log_config",
    "log_warning_box",
    # Exceptions
    "FixelCFEError",
    "ConfigurationError",
    "FormatError",
    "ConsistencyError",
    "ConnectivityError",
    "StatisticalError",
]
