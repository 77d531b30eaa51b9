"""Webhook delivery service: registrations, retry queue, dead letters and circuit breaking."""

__version__ = "0.1.0"
