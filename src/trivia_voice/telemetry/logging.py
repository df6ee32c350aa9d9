"""Structured logging setup for the voice engine loggers."""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the ``trivia_voice`` logger tree."""
    logger = logging.getLogger("trivia_voice")
    logger.setLevel(level.upper())
    if not any(getattr(handler, "_trivia_voice", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._trivia_voice = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
