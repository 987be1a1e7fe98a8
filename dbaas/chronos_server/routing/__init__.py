"""
Routing module for Chronos Server.

Resolves logical databases (tier + tenant/domain scope) to physical metadata
and object store connections using rendezvous or jump consistent hashing.

Invariants:
    - The routing table is immutable after startup
    - Routing is deterministic for a fixed connection pool
"""

from .router import GENERIC_SCOPE, RouteTarget, Router, jump_hash, rendezvous_pick

__all__ = ["GENERIC_SCOPE", "RouteTarget", "Router", "jump_hash", "rendezvous_pick"]
