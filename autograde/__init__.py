"""Automated grading engine, submission pipeline and batch orchestrator."""

__version__ = "0.1.0"
