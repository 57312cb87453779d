"""Supervision of a Haven relay worker and a live view of its record streams."""

__version__ = "0.1.0"
