"""Batch image transcoding pipeline with bounded concurrency, retry and zip export."""

__version__ = "1.0.0"
