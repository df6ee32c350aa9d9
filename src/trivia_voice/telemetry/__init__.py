"""Logging setup for hosts embedding the voice engine."""

from .logging import configure_logging

__all__ = ["configure_logging"]
