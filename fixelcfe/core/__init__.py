"""Core pipeline orchestration for fixelcfe."""

from fixelcfe.core.version import __version__
from fixelcfe.core.connectivity import run_connectivity
from fixelcfe.core.filtering import run_smoothing, run_connect
from fixelcfe.core.stats import run_stats

__all__ = [
    "__version__",
    "run_connectivity",
    "run_smoothing",
    "run_connect",
    "run_stats",
]
