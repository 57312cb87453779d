"""
Local package for the Haven monitor.

This package holds the merged configuration, the worker-facing configuration
snapshot, the process supervisor and the operator console.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
