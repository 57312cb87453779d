"""
Logging module for the monitor.
This module provides the console setup and the optional Grafana Loki handler.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
