"""
Chronos Server - versioned, multi-tenant document storage over object stores.

This package implements an embeddable document database built on:
- Append-only version chains per item (ov), with a per-collection version (cv)
- Object storage (S3-compatible, local filesystem or in-memory) for payloads
- SQLite metadata stores for heads, version rows and indexed projections
- Tier/tenant routing onto pooled connections by consistent hashing

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │   Caller    │────▶│ CollectionOps│────▶│ VersionManager  │
    └─────────────┘     └──────┬───────┘     └────────┬────────┘
                               │                      │
                               ▼                      ▼
                        ┌─────────────┐       ┌────────────────┐
                        │MetadataIndex│       │ WriteOptimizer │
                        └──────┬──────┘       └───────┬────────┘
                               │                      │
                    ┌──────────┴──────────┬───────────┴─────────┐
                    ▼                     ▼                     ▼
               ┌─────────┐          ┌──────────┐          ┌──────────┐
               │ SQLite  │          │  Object  │          │ Counters │
               │metadata │          │  store   │          │ (SQLite) │
               └─────────┘          └──────────┘          └──────────┘
                    ▲                     ▲                     ▲
                    └──── Retention sweeper ──── Rollup loop ───┘

Invariants:
    - Versions are append-only; ov advances by exactly 1 per committed write
    - Concurrent writers are ordered by compare-and-swap on the item's ov
    - Routing is resolved from configuration once and never mutated
    - Background loops talk to the request path only through storage

How to change safely:
    - Keep blob keys unique per write attempt
    - Pool membership changes require a restart (routing remaps keys)
    - Retention must never delete an item's current version

Version: see _version.py.
"""

from ._version import __version__
from .engine import Chronos, ChronosAdmin, CollectionOps, init_chronos

__all__ = ["Chronos", "ChronosAdmin", "CollectionOps", "__version__", "init_chronos"]
