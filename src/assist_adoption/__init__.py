"""Assist adoption tracking: usage aggregation, streaks and key rotation."""

__version__ = "0.1.0"
