"""Flowwatch: supervision engine for multi-phase build workflows."""

__version__ = "0.4.0"
