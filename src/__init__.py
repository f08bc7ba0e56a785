# src/__init__.py — v1
"""geocopy: staged product copy generation with tiered caching and recovery."""

from geocopy.version import __version__

__all__ = ["__version__"]
