"""Resilient worker pool and dependency-aware issue loop."""

__version__ = "0.1.0"
