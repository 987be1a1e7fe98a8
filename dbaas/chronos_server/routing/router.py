"""
Router for Chronos Server.

Maps a logical (tier, scope key, collection) to a concrete backing pair: a metadata store
connection and an object store connection.

Routing steps:
    1. Find the database entry: the tier's generic entry for scope key
       "generic", else the domain or tenant entry whose ext_identifier matches
    2. Build the routing key from the choose_key template (default
       ``tenantId|dbName``)
    3. Metadata connection: the entry's pinned URI, else hash over the pool
       using the database-level key (collection left empty)
    4. Object store connection: hash over the object store pool using the
       full key, so a template with ``collection`` spreads one database's
       collections over the pool

Invariants:
    - The routing table is built once and never mutated
    - The same routing key always maps to the same pair for a fixed pool
    - All collections of a database share its metadata connection
    - Jump hashing remaps ~1/N keys when the pool grows from N to N+1;
      rendezvous hashing remaps approximately the same share

How to change safely:
    - Changing hash functions remaps every key; treat it as a data migration
    - Append new pool members at the end (jump hashing depends on order)
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from ..config import ChronosConfig, DatabaseEntry, HashAlgo, TIERS
from ..errors import ConfigurationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

GENERIC_SCOPE = "generic"

_TEMPLATE_FIELDS = ("tenantId", "dbName", "tier", "collection")


def _hash64(data: str) -> int:
    """Stable 64-bit hash of a string."""
    return int.from_bytes(hashlib.sha256(data.encode("utf-8")).digest()[:8], "big")


def jump_hash(key: int, num_buckets: int) -> int:
    """Jump consistent hash (Lamping & Veach).

    Args:
        key: 64-bit key
        num_buckets: Number of buckets (> 0)

    Returns:
        Bucket index in [0, num_buckets)
    """
    if num_buckets <= 0:
        raise ValueError("num_buckets must be positive")
    b, j = -1, 0
    while j < num_buckets:
        b = j
        key = (key * 2862933555777941757 + 1) & 0xFFFFFFFFFFFFFFFF
        j = int((b + 1) * (float(1 << 31) / float((key >> 33) + 1)))
    return b


def rendezvous_pick(routing_key: str, candidates: Sequence[tuple[str, float]]) -> int:
    """Weighted highest-random-weight selection.

    Args:
        routing_key: Key being routed
        candidates: (connection_key, weight) pairs

    Returns:
        Index of the winning candidate
    """
    best_index = -1
    best_score = -math.inf
    for index, (conn_key, weight) in enumerate(candidates):
        # Map the hash into (0, 1) so log() is finite
        h = (_hash64(f"{conn_key}:{routing_key}") + 1) / float((1 << 64) + 1)
        score = -weight / math.log(h)
        if score > best_score or (score == best_score and conn_key < candidates[best_index][0]):
            best_index = index
            best_score = score
    return best_index


@dataclass(frozen=True)
class RouteTarget:
    """Resolved routing for one logical database.

    Attributes:
        tier: Tier name
        scope_key: "generic" or the tenant/domain ext_identifier
        db_name: Database name
        routing_key: Key that was hashed
        metadata_key: Metadata connection key (or "pinned:<entry key>")
        metadata_uri: Metadata store URI
        object_store_key: Object store connection key
        collection: Collection the route was resolved for ("" for the database)
    """

    tier: str
    scope_key: str
    db_name: str
    routing_key: str
    metadata_key: str
    metadata_uri: str
    object_store_key: str
    collection: str = ""

    @property
    def tenant_scope(self) -> str:
        return f"tenant:{self.scope_key}"


class Router:
    """Immutable routing table over the configured connection pools.

    Example:
        >>> router = Router(config)
        >>> target = router.resolve("runtime", "tenant-a")
        >>> target.db_name
        'runtime_tenant_a'
    """

    def __init__(self, config: ChronosConfig) -> None:
        """Build the routing table.

        Raises:
            ConfigurationError: If a tier has no databases or a pool is empty
        """
        self.hash_algo = config.routing.hash_algo
        self.template = tuple(part.strip() for part in config.routing.choose_key.split("|"))
        unknown = [p for p in self.template if p not in _TEMPLATE_FIELDS]
        if unknown or not self.template:
            raise ConfigurationError(
                f"Invalid routing choose_key '{config.routing.choose_key}'",
                setting="routing.choose_key",
            )

        self._metadata_pool = tuple((c.key, c.weight, c.uri) for c in config.metadata_connections)
        self._object_pool = tuple((c.key, c.weight) for c in config.object_stores)
        if not self._object_pool:
            raise ConfigurationError("Object store pool is empty", setting="object_stores")

        self._entries: dict[tuple[str, str], DatabaseEntry] = {}
        self._by_db_name: dict[str, tuple[str, str]] = {}
        for tier, tier_config in config.databases.items():
            if tier not in TIERS:
                raise ConfigurationError(f"Unknown tier '{tier}'", setting="databases")
            if tier_config.generic:
                self._register(tier, GENERIC_SCOPE, tier_config.generic)
            for entry in tier_config.domains + tier_config.tenants:
                self._register(tier, entry.ext_identifier, entry)

        if not self._entries:
            raise ConfigurationError("Routing table is empty", setting="databases")
        if not self._metadata_pool and any(e.uri is None for e in self._entries.values()):
            raise ConfigurationError("Metadata connection pool is empty", setting="metadata_connections")

        # Resolve everything eagerly so misconfiguration fails at startup
        self._table: dict[tuple[str, str], RouteTarget] = {
            key: self._route(key[0], key[1], entry) for key, entry in self._entries.items()
        }
        logger.info(
            "Routing table built",
            extra={
                "hash_algo": self.hash_algo.value,
                "routes": len(self._table),
                "metadata_pool": len(self._metadata_pool),
                "object_pool": len(self._object_pool),
            },
        )

    def _register(self, tier: str, scope_key: str, entry: DatabaseEntry) -> None:
        self._entries[(tier, scope_key)] = entry
        self._by_db_name[entry.db_name] = (tier, scope_key)

    def routing_key(self, tier: str, scope_key: str, db_name: str, collection: str = "") -> str:
        """Build the routing key from the choose_key template."""
        values = {
            "tenantId": scope_key,
            "dbName": db_name,
            "tier": tier,
            "collection": collection,
        }
        return "|".join(values[part] for part in self.template)

    def _choose(self, routing_key: str, candidates: Sequence[tuple[str, float]]) -> int:
        if self.hash_algo == HashAlgo.JUMP:
            return jump_hash(_hash64(routing_key), len(candidates))
        return rendezvous_pick(routing_key, candidates)

    def _route(self, tier: str, scope_key: str, entry: DatabaseEntry, collection: str = "") -> RouteTarget:
        db_key = self.routing_key(tier, scope_key, entry.db_name)
        routing_key = self.routing_key(tier, scope_key, entry.db_name, collection)

        if entry.uri:
            metadata_key = f"pinned:{entry.key}"
            metadata_uri = entry.uri
        else:
            index = self._choose(db_key, [(k, w) for k, w, _ in self._metadata_pool])
            metadata_key, _, metadata_uri = self._metadata_pool[index]

        object_index = self._choose(routing_key, self._object_pool)
        return RouteTarget(
            tier=tier,
            scope_key=scope_key,
            db_name=entry.db_name,
            routing_key=routing_key,
            metadata_key=metadata_key,
            metadata_uri=metadata_uri,
            object_store_key=self._object_pool[object_index][0],
            collection=collection,
        )

    @property
    def routes_by_collection(self) -> bool:
        return "collection" in self.template

    def for_collection(self, target: RouteTarget, collection: str) -> RouteTarget:
        """Narrow a database route to one collection.

        Only the object store choice can change, and only when the choose_key
        template includes ``collection``.
        """
        if not self.routes_by_collection:
            return target
        entry = self._entries[(target.tier, target.scope_key)]
        return self._route(target.tier, target.scope_key, entry, collection)

    def resolve(self, tier: str, scope_key: str) -> RouteTarget:
        """Resolve a tier and scope key to its backing connections.

        Args:
            tier: metadata, knowledge or runtime
            scope_key: "generic" or a tenant/domain ext_identifier

        Raises:
            ValidationError: If scope_key is empty
            ConfigurationError: If the tier is not configured
            NotFoundError: If the scope key is unknown within the tier
        """
        if not scope_key:
            raise ValidationError("scope_key must be non-empty", field_name="scope_key")
        if not any(t == tier for t, _ in self._table):
            raise ConfigurationError(f"Tier not configured: {tier}", setting="databases")
        target = self._table.get((tier, scope_key))
        if target is None:
            raise NotFoundError(
                f"No database for scope '{scope_key}' in tier '{tier}'",
                resource_type="scope",
                resource_id=scope_key,
            )
        return target

    def resolve_db(self, db_name: str) -> RouteTarget:
        """Resolve a database name directly.

        Raises:
            NotFoundError: If no entry has this database name
        """
        location = self._by_db_name.get(db_name)
        if location is None:
            raise NotFoundError(
                f"Database not configured: {db_name}",
                resource_type="database",
                resource_id=db_name,
            )
        return self._table[location]

    def targets(self) -> list[RouteTarget]:
        """All resolved routes (used by background sweepers)."""
        return list(self._table.values())
