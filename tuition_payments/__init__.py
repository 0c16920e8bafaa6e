"""Tuition bill payment recording and gateway reconciliation service."""

__version__ = "1.0.0"
