"""Claim-and-process worker for per-thread site edits."""

__version__ = "0.1.0"
