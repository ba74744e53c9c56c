"""Scan node core: agent pool, alert batching, metrics aggregation and rate limiting."""

__version__ = "0.1.0"