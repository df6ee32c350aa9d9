"""Voice answer engine for a party trivia game."""

__version__ = "0.1.0"
