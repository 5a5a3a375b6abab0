"""Offline-first task list synchronization."""

__version__ = "0.1.0"
