"""Resumable multi-stage media task orchestration."""

__version__ = "0.1.0"
