"""Configuration loading and validation for fixelcfe."""

from fixelcfe.config.defaults import ConnectivityConfig, SmoothingConfig, StatsConfig
from fixelcfe.config.loader import load_config_file, merge_configs, config_from_dict, save_config
from fixelcfe.config.validator import ConfigValidator

__all__ = [
    "ConnectivityConfig",
    "SmoothingConfig",
    "StatsConfig",
    "load_config_file",
    "merge_configs",
    "config_from_dict",
    "save_config",
    "ConfigValidator",
]
