"""Durable background task queue for the research-paper catalogue."""

__version__ = "0.1.0"
