"""Patch Deploy — incremental client deployment engine."""

__version__ = "0.1.0"
