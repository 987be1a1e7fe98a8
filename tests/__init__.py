"""
Chronos Test Suite.

This package contains:
- unit/: Unit tests (SQLite in temporary directories, in-memory object store)
- integration/: Integration tests (full engine over local and in-memory stores)
"""
