"""Caching reverse proxy for binary artifacts."""

__version__ = "0.1.0"
