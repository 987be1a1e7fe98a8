"""
Version retention and blob garbage collection.
"""

from .sweeper import RetentionSweeper, SweepResult

__all__ = ["RetentionSweeper", "SweepResult"]
