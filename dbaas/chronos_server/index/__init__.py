"""
Metadata indexing: filter grammar and indexed listings.
"""

from .filters import Cursor, Predicate, SortSpec, matches, parse_filter, parse_sort

__all__ = ["Cursor", "Predicate", "SortSpec", "matches", "parse_filter", "parse_sort"]
