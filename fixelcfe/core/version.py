"""Version information for fixelcfe."""

__version__ = "1.0.0"
