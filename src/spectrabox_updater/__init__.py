"""
SpectraBox self-update subsystem.

This package detects newer SpectraBox releases on GitHub, drives the running
service through a script-based upgrade with rollback handling, and pushes live
progress to connected observers.
"""

__version__ = "0.1.0"
