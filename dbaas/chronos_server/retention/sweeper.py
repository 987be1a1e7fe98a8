"""
Retention sweeper for Chronos.

Periodically prunes old versions from every routed metadata database and
deletes the payload blobs no remaining version references.

Invariants:
    - The current version of an item is never pruned; the metadata store
      conditions every delete on ``ov < items.ov`` inside the same transaction
    - A blob is deleted only after its last referencing version row is gone
    - A pass is idempotent: re-running it, or running two concurrently, only
      repeats no-op deletes

How to change safely:
    - Keep metadata deletion before blob deletion; the reverse order can
      leave versions pointing at missing blobs
    - Blob delete failures are logged and left for manual cleanup; they never
      resurrect version rows
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from ..config import ChronosConfig
from ..errors import NotFoundError, StorageError
from ..routing import Router
from ..storage.base import BlobRef
from ..storage.pool import ConnectionPool
from ..storage.retry import retry_storage

logger = logging.getLogger(__name__)

DAY_MS = 24 * 3600 * 1000


@dataclass
class SweepResult:
    """Totals of one sweep pass."""

    databases: int = 0
    versions_deleted: int = 0
    blobs_deleted: int = 0
    blob_failures: list[BlobRef] = field(default_factory=list)
    shadows_cleared: int = 0


class RetentionSweeper:
    """Background version pruner and blob collector.

    Example:
        >>> sweeper = RetentionSweeper(router, pool, config)
        >>> result = await sweeper.sweep_once()
        >>> asyncio.create_task(sweeper.start())
    """

    def __init__(self, router: Router, pool: ConnectionPool, config: ChronosConfig) -> None:
        self.router = router
        self.pool = pool
        self.config = config
        self._running = False

    async def _delete_blob(self, blob: BlobRef) -> None:
        store = self.pool.object_store(blob.store_key)

        async def delete() -> None:
            try:
                await store.delete(blob.bucket, blob.key)
            except NotFoundError:
                pass

        write = self.config.write_optimization
        await retry_storage(
            delete,
            write.max_retries,
            write.retry_delay_ms,
            f"Delete of blob {blob.bucket}/{blob.key}",
        )

    async def sweep_once(self, now_ms: int | None = None) -> SweepResult:
        """Run one retention pass over every routed database."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        policy = self.config.retention.ver
        older_than = now_ms - policy.days * DAY_MS if policy.days is not None else None
        result = SweepResult()

        seen: set[tuple[str, str]] = set()
        for target in self.router.targets():
            if (target.metadata_key, target.db_name) in seen:
                continue
            seen.add((target.metadata_key, target.db_name))
            store = self.pool.metadata_store(target)
            result.databases += 1

            result.shadows_cleared += await store.clear_expired_shadows(target.db_name, now_ms)
            if older_than is None and policy.max_per_item is None:
                continue

            for collection in await store.collections(target.db_name):
                pruned = await store.prune_versions(
                    target.db_name, collection, older_than, policy.max_per_item
                )
                result.versions_deleted += pruned.versions_deleted
                for blob in pruned.orphaned_blobs:
                    try:
                        await self._delete_blob(blob)
                    except StorageError as e:
                        logger.error(
                            f"Orphaned blob left in place: {e}",
                            extra={"store_key": blob.store_key, "bucket": blob.bucket, "key": blob.key},
                        )
                        result.blob_failures.append(blob)
                    else:
                        result.blobs_deleted += 1

        logger.info(
            "Retention sweep complete",
            extra={
                "databases": result.databases,
                "versions_deleted": result.versions_deleted,
                "blobs_deleted": result.blobs_deleted,
                "blob_failures": len(result.blob_failures),
                "shadows_cleared": result.shadows_cleared,
            },
        )
        return result

    async def start(self) -> None:
        """Run the sweep loop until stop()."""
        if self._running:
            logger.warning("Retention sweeper already running")
            return
        if not self.config.retention.sweeper_enabled:
            logger.info("Retention sweeper disabled")
            return

        self._running = True
        interval = self.config.retention.sweep_interval_seconds
        logger.info("Starting retention sweeper", extra={"interval_seconds": interval})
        try:
            while self._running:
                try:
                    await self.sweep_once()
                except Exception as e:
                    logger.error(f"Retention sweep error: {e}", exc_info=True)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Retention sweeper cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
