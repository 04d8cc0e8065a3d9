"""Proposal decision and task allocation engine."""

__version__ = "0.1.0"
