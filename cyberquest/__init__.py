"""Telegram scavenger hunt: per-team routes, password gates, riddles and hints."""

__version__ = "1.0.0"
