"""Reliable message ingestion and queueing core."""

__version__ = "1.0.0"
