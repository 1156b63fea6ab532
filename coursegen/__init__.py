"""Asynchronous course generation pipeline: job queue, workers and rate-limit handling."""

__version__ = "0.1.0"
