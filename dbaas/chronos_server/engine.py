"""
Chronos engine facade.

Wires the router, connection pools, write optimizer, counter engine, presign
gateway, version manager, metadata index and retention sweeper together and
exposes them as context-bound collection operations:

    chronos = init_chronos(config)
    users = chronos.with_context(db_name="runtime_generic", collection="users")
    created = await users.create({"email": "a@b.c"}, actor="user:1")
    view = await users.get_latest(created.id)
    await chronos.admin.shutdown()

Invariants:
    - Components are constructed once from an immutable configuration
    - Every operation accepts ``timeout``; expiry cancels the operation,
      which withdraws any buffered write, and raises asyncio.TimeoutError
    - shutdown() drains buffered writes, stops background loops and closes
      every pooled connection; repeated calls are no-ops

How to change safely:
    - New operations go on CollectionOps and must route through _run() so
      they get lazy startup and timeout handling
    - Keep shutdown ordering: loops, then write buffer, then connections
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable
from datetime import datetime
from typing import Any, TypeVar

from .config import ChronosConfig, sqlite_data_dir
from .counters import CounterBucket, CounterEngine, CounterStore, RollupResult
from .errors import StorageError, ValidationError
from .index.metadata_index import MetadataIndex
from .presign import PresignGateway
from .retention import RetentionSweeper, SweepResult
from .routing import GENERIC_SCOPE, RouteTarget, Router
from .storage import ConnectionPool
from .versioning.manager import VersionManager
from .versioning.types import ItemView, ListResult, VersionInfo, WriteResult
from .write import BatchFlushResult, WriteOptimizer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collection names become blob key prefixes
_COLLECTION_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class Chronos:
    """Versioned document engine.

    Attributes:
        config: Validated engine configuration
        router: Immutable routing table
        pool: Metadata and object store connections
        optimizer: Write batching and counter debouncing
        counters: Counter rules and rollup
        manager: Version manager
        index: Metadata listings
        sweeper: Retention sweeper
        admin: Administrative operations
    """

    def __init__(self, config: ChronosConfig) -> None:
        config.validate()
        self.config = config
        self.router = Router(config)
        self.pool = ConnectionPool(config)
        self.counters = CounterEngine(
            config.counter_rules,
            CounterStore(
                sqlite_data_dir(config.counters_uri),
                config.counters.db_name,
                wal_mode=config.sqlite.wal_mode,
                busy_timeout_ms=config.sqlite.busy_timeout_ms,
            ),
            config.rollup,
            config.retention.counters,
        )
        self.optimizer = WriteOptimizer(config.write_optimization, self.pool, self.counters.apply)
        self.presign = PresignGateway(self.pool, config.presign.default_ttl_seconds)
        self.manager = VersionManager(config, self.pool, self.optimizer, self.presign, self.counters)
        self.index = MetadataIndex(self.manager)
        self.sweeper = RetentionSweeper(self.router, self.pool, config)
        self.admin = ChronosAdmin(self)

        self._started = False
        self._closed = False
        self._start_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self, background: bool = True) -> None:
        """Connect object stores and start the background loops.

        Called lazily by the first operation; safe to call more than once.

        Args:
            background: Start the rollup and retention loops
        """
        async with self._start_lock:
            if self._started:
                return
            if self._closed:
                raise StorageError("Chronos is shut down", backend="engine", operation="start")
            await self.pool.start()
            if background:
                self._tasks.append(asyncio.create_task(self.counters.start()))
                self._tasks.append(asyncio.create_task(self.sweeper.start()))
            self._started = True
            logger.info(
                "Chronos started",
                extra={"databases": [t.db_name for t in self.router.targets()], "background": background},
            )

    async def __aenter__(self) -> Chronos:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.admin.shutdown()

    def with_context(
        self,
        collection: str,
        db_name: str | None = None,
        tier: str | None = None,
        ext_identifier: str | None = None,
    ) -> CollectionOps:
        """Bind operations to one database and collection.

        The database is named either directly by ``db_name`` or by ``tier`` and
        ``ext_identifier`` (omitted means the tier's generic database).

        Raises:
            ValidationError: If the collection name is invalid or both or
                neither addressing forms are given
            ConfigurationError: If the tier is not configured
            NotFoundError: If the database or scope is unknown
        """
        if not isinstance(collection, str) or not _COLLECTION_NAME.match(collection):
            raise ValidationError(f"Invalid collection name: {collection!r}", field_name="collection")
        if (db_name is None) == (tier is None):
            raise ValidationError("Give exactly one of db_name or tier", field_name="db_name")
        if db_name is not None:
            target = self.router.resolve_db(db_name)
        else:
            target = self.router.resolve(tier, ext_identifier or GENERIC_SCOPE)
        return CollectionOps(self, self.router.for_collection(target, collection), collection)

    async def _run(self, operation: Awaitable[T], timeout: float | None) -> T:
        if self._closed:
            if asyncio.iscoroutine(operation):
                operation.close()
            raise StorageError("Chronos is shut down", backend="engine", operation="request")
        if not self._started:
            await self.start()
        if timeout is None:
            return await operation
        return await asyncio.wait_for(operation, timeout)


class CollectionOps:
    """Operations bound to one routed database and collection."""

    def __init__(self, chronos: Chronos, target: RouteTarget, collection: str) -> None:
        self.chronos = chronos
        self.target = target
        self.collection = collection

    @property
    def db_name(self) -> str:
        return self.target.db_name

    async def create(
        self,
        payload: dict[str, Any],
        actor: str,
        reason: str = "",
        timeout: float | None = None,
    ) -> WriteResult:
        return await self.chronos._run(
            self.chronos.manager.create(self.target, self.collection, payload, actor, reason),
            timeout,
        )

    async def update(
        self,
        item_id: str,
        payload: dict[str, Any],
        expected_ov: int,
        actor: str,
        reason: str = "",
        timeout: float | None = None,
    ) -> WriteResult:
        return await self.chronos._run(
            self.chronos.manager.update(
                self.target, self.collection, item_id, payload, expected_ov, actor, reason
            ),
            timeout,
        )

    async def enrich(
        self,
        item_id: str,
        patch: dict[str, Any],
        actor: str,
        reason: str = "",
        function_id: str | None = None,
        timeout: float | None = None,
    ) -> WriteResult:
        return await self.chronos._run(
            self.chronos.manager.enrich(
                self.target, self.collection, item_id, patch, actor, reason, function_id
            ),
            timeout,
        )

    async def delete(
        self,
        item_id: str,
        expected_ov: int,
        actor: str,
        reason: str = "",
        timeout: float | None = None,
    ) -> WriteResult:
        return await self.chronos._run(
            self.chronos.manager.delete(self.target, self.collection, item_id, expected_ov, actor, reason),
            timeout,
        )

    async def restore_object(
        self,
        item_id: str,
        ov: int,
        actor: str = "system",
        reason: str = "",
        timeout: float | None = None,
    ) -> WriteResult:
        return await self.chronos._run(
            self.chronos.manager.restore(self.target, self.collection, item_id, ov, actor, reason),
            timeout,
        )

    async def get_latest(
        self,
        item_id: str,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ItemView | None:
        return await self.chronos._run(
            self.chronos.manager.get_latest(
                self.target, self.collection, item_id, presign, ttl_seconds, projection
            ),
            timeout,
        )

    async def get_version(
        self,
        item_id: str,
        ov: int,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ItemView | None:
        return await self.chronos._run(
            self.chronos.manager.get_version(
                self.target, self.collection, item_id, ov, presign, ttl_seconds, projection
            ),
            timeout,
        )

    async def get_as_of(
        self,
        item_id: str,
        timestamp: datetime | str | int,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ItemView | None:
        return await self.chronos._run(
            self.chronos.manager.get_as_of(
                self.target, self.collection, item_id, timestamp, presign, ttl_seconds, projection
            ),
            timeout,
        )

    async def history(self, item_id: str, timeout: float | None = None) -> list[VersionInfo]:
        return await self.chronos._run(
            self.chronos.manager.history(self.target, self.collection, item_id),
            timeout,
        )

    async def list_by_meta(
        self,
        filter: dict[str, Any] | None = None,
        limit: int = 100,
        sort: dict[str, int] | None = None,
        after_id: str | None = None,
        page_token: str | None = None,
        presign: bool = False,
        ttl_seconds: int | None = None,
        include_deleted: bool = False,
        timeout: float | None = None,
    ) -> ListResult:
        return await self.chronos._run(
            self.chronos.index.list_by_meta(
                self.target,
                self.collection,
                filter=filter,
                limit=limit,
                sort=sort,
                after_id=after_id,
                page_token=page_token,
                presign=presign,
                ttl_seconds=ttl_seconds,
                include_deleted=include_deleted,
            ),
            timeout,
        )


class ChronosAdmin:
    """Administrative operations on a Chronos engine."""

    def __init__(self, chronos: Chronos) -> None:
        self.chronos = chronos
        self._shutdown_lock = asyncio.Lock()

    async def shutdown(self) -> None:
        """Drain the write buffer, stop loops and close every connection.

        Safe to call more than once.
        """
        chronos = self.chronos
        async with self._shutdown_lock:
            if chronos._closed:
                return
            chronos._closed = True
            logger.info("Shutting down Chronos")

            await chronos.counters.stop()
            await chronos.sweeper.stop()
            for task in chronos._tasks:
                task.cancel()
            if chronos._tasks:
                await asyncio.gather(*chronos._tasks, return_exceptions=True)
            chronos._tasks.clear()

            try:
                await chronos.optimizer.shutdown()
            finally:
                await chronos.pool.close()
            logger.info("Chronos shut down")

    async def flush(self) -> list[BatchFlushResult]:
        """Flush buffered writes and counter deltas now."""
        results = await self.chronos.optimizer.flush()
        await self.chronos.optimizer.flush_counters()
        return results

    async def sweep(self, now_ms: int | None = None) -> SweepResult:
        """Run one retention pass."""
        return await self.chronos._run(self.chronos.sweeper.sweep_once(now_ms), None)

    async def rollup(self, now_ms: int | None = None) -> RollupResult:
        """Run one counter rollup pass."""
        return await self.chronos._run(self.chronos.counters.rollup_once(now_ms), None)

    async def counter_total(self, name: str, scope: str = "meta", scope_key: str | None = None) -> int:
        return await self.chronos.counters.get_total(name, scope, scope_key)

    async def counter_buckets(
        self,
        name: str,
        granularity: str,
        scope: str = "meta",
        scope_key: str | None = None,
    ) -> list[CounterBucket]:
        return await self.chronos.counters.get_buckets(name, granularity, scope, scope_key)

    async def stats(self, db_name: str) -> dict[str, int]:
        """Item and version counts of one database."""
        target = self.chronos.router.resolve_db(db_name)
        return await self.chronos._run(self.chronos.pool.metadata_store(target).get_stats(db_name), None)


def init_chronos(config: ChronosConfig | None = None) -> Chronos:
    """Build an engine from configuration (loaded from the environment if omitted).

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    return Chronos(config or ChronosConfig.from_env())
