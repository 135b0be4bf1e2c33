"""Gatehouse: local and third-party login for web applications."""

__version__ = "0.1.0"
