"""
Conditional counters and time-bucketed rollups.
"""

from .engine import CounterEngine, scope_key_for
from .store import CounterBucket, CounterDelta, CounterStore, RollupResult

__all__ = [
    "CounterBucket",
    "CounterDelta",
    "CounterEngine",
    "CounterStore",
    "RollupResult",
    "scope_key_for",
]
