"""Verified, deduplicated intake for payment gateway webhooks."""

__version__ = "1.0.0"
