"""Erazor - background removal upload service."""

__version__ = "1.0.0"
