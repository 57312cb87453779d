"""
The Supervisor package.
Manages the lifecycle of the relay worker process.

This package contains the central ProcessSupervisor class and its helper modules,
which together handle launching and stopping the worker, classifying its output,
running one-shot imports, and clearing stale database locks.
"""
from .supervisor import ProcessSupervisor

__all__ = ['ProcessSupervisor']
