"""Suspicion scoring and verification case tracking for Discord communities."""

__version__ = "0.4.0"
