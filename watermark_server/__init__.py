"""Batch watermark removal server."""

__version__ = "0.1.0"
