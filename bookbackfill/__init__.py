"""Backfill queue for external book metadata providers."""

__version__ = "0.1.0"
