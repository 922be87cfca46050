"""Connectivity-based fixel enhancement and permutation testing."""

from fixelcfe.core.version import __version__

__all__ = ["__version__"]
