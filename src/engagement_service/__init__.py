"""Engagement engine: request matching, lifecycle, and payment flows."""

__version__ = "0.1.0"
