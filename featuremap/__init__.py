"""Feature registry and impact analysis."""

__version__ = "0.1.0"
