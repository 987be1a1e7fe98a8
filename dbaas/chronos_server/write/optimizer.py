"""
Write optimizer for Chronos.

Buffers version writes per (db_name, collection) shard and flushes them as one
round of concurrent object-store puts followed by a single metadata
transaction. Counter deltas are debounced separately.

Flush triggers:
    - Size: the shard buffer reaches ``batch_size``
    - Time: ``batch_window_ms`` after the first write entered an empty buffer

Invariants:
    - No write waits longer than batch_window_ms before its flush starts
    - Every buffered write is resolved exactly once: committed, or failed with
      the error that stopped it (ConflictError, NotFoundError, StorageError)
    - A caller cancelled before its write is flushing removes the write from
      the buffer; a write already flushing commits or fails on its own
    - pending_count equals buffered plus in-flight writes
    - A failed counter flush keeps its deltas for the next attempt
    - shutdown() returns only after every accepted write is resolved, including
      flushes a timer or a full buffer already started
    - Capacity is reserved before any caller-side upload

How to change safely:
    - Never await while holding the buffer lock
    - Keep commit_batch() per-member so one conflict cannot fail a batch
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from ..config import WriteOptimizationConfig
from ..counters.store import CounterDelta
from ..errors import CapacityError, ChronosError, StorageError
from ..routing import RouteTarget
from ..storage.base import BatchOutcome, BlobRef, CommitResult, VersionWrite
from ..storage.pool import ConnectionPool
from ..storage.retry import retry_storage

logger = logging.getLogger(__name__)

ShardKey = tuple[str, str]
CounterSink = Callable[[list[CounterDelta]], Awaitable[None]]


@dataclass(frozen=True)
class BlobUpload:
    """A blob to put before the metadata write that references it."""

    blob: BlobRef
    body: bytes


@dataclass
class PendingWrite:
    """A write waiting in a shard buffer."""

    target: RouteTarget
    write: VersionWrite
    uploads: list[BlobUpload]
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class BatchFlushResult:
    """Per-member outcome of one flush.

    Attributes:
        db_name: Database the batch was written to
        collection: Collection of the shard
        outcomes: (item_id, CommitResult or error) in buffer order
    """

    db_name: str
    collection: str
    outcomes: list[tuple[str, BatchOutcome]] = field(default_factory=list)

    @property
    def succeeded(self) -> list[CommitResult]:
        return [o for _, o in self.outcomes if isinstance(o, CommitResult)]

    @property
    def failed(self) -> list[tuple[str, Exception]]:
        return [(item_id, o) for item_id, o in self.outcomes if not isinstance(o, CommitResult)]


class WriteOptimizer:
    """Batches version writes and debounces counter deltas.

    With ``enabled=False`` every write is flushed immediately as a batch of
    one through the same commit path.

    Example:
        >>> optimizer = WriteOptimizer(config.write_optimization, pool, counters.apply)
        >>> result = await optimizer.submit(target, write, uploads)
        >>> await optimizer.shutdown()
    """

    def __init__(
        self,
        config: WriteOptimizationConfig,
        pool: ConnectionPool,
        counter_sink: CounterSink | None = None,
    ) -> None:
        self.config = config
        self.pool = pool
        self.counter_sink = counter_sink
        self._buffers: dict[ShardKey, list[PendingWrite]] = {}
        self._timers: dict[ShardKey, asyncio.Task] = {}
        self._flush_tasks: set[asyncio.Future] = set()
        self._pending = 0
        self._lock = asyncio.Lock()
        self._counter_deltas: dict[tuple[str, str], CounterDelta] = {}
        self._counter_timer: asyncio.Task | None = None
        self._counter_lock = asyncio.Lock()
        self._closed = False
        self.flush_count = 0

    @property
    def batching(self) -> bool:
        return self.config.enabled

    @property
    def pending_count(self) -> int:
        return self._pending

    def buffered(self, db_name: str, collection: str) -> int:
        return len(self._buffers.get((db_name, collection), []))

    async def submit(
        self,
        target: RouteTarget,
        write: VersionWrite,
        uploads: list[BlobUpload],
    ) -> CommitResult:
        """Queue a write and wait for its outcome.

        Raises:
            CapacityError: If max_pending_writes writes are already pending
            ConflictError: If the item's ov moved
            NotFoundError: If the item is missing or deleted
            StorageError: If storage failed after retries
        """
        if self._closed:
            raise StorageError("Write optimizer is shut down", backend="write_optimizer", operation="submit")

        async with self._lock:
            if self._pending >= self.config.max_pending_writes:
                raise CapacityError(
                    f"Write buffer full ({self._pending} pending)",
                    pending=self._pending,
                    limit=self.config.max_pending_writes,
                )
            self._pending += 1

        if self.config.enabled and not self.config.batch_s3 and uploads:
            try:
                await self._upload_all(uploads)
            except BaseException:
                self._pending -= 1
                raise
            uploads = []

        shard = (target.db_name, write.collection)
        pending = PendingWrite(
            target=target,
            write=write,
            uploads=uploads,
            future=asyncio.get_running_loop().create_future(),
        )

        batch: list[PendingWrite] | None = None
        async with self._lock:
            if self._closed:
                self._pending -= 1
                raise StorageError("Write optimizer is shut down", backend="write_optimizer", operation="submit")
            if not self.config.enabled:
                batch = [pending]
            else:
                buffer = self._buffers.setdefault(shard, [])
                buffer.append(pending)
                if len(buffer) >= self.config.batch_size:
                    batch = self._take(shard)
                elif len(buffer) == 1:
                    self._timers[shard] = asyncio.create_task(self._flush_after(shard))

        if not self.config.enabled:
            # Runs on the caller's task so a timeout cancels its I/O
            done = asyncio.get_running_loop().create_future()
            self._flush_tasks.add(done)
            try:
                await self._flush_batch(shard, batch)
            finally:
                self._flush_tasks.discard(done)
                done.set_result(None)
            return pending.future.result()

        if batch:
            self._spawn_flush(shard, batch)
        try:
            return await pending.future
        except asyncio.CancelledError:
            self._withdraw(shard, pending)
            raise

    def _take(self, shard: ShardKey) -> list[PendingWrite]:
        """Detach a shard's buffer for flushing (lock held)."""
        timer = self._timers.pop(shard, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        return self._buffers.pop(shard, [])

    def _withdraw(self, shard: ShardKey, pending: PendingWrite) -> None:
        """Drop a cancelled caller's write if it has not started flushing.

        Runs without awaiting, so it cannot interleave with a buffer update.
        """
        buffer = self._buffers.get(shard)
        if buffer is None or pending not in buffer:
            return
        buffer.remove(pending)
        self._pending -= 1
        if not buffer:
            self._take(shard)
        logger.debug(
            "Withdrew cancelled write",
            extra={"db_name": shard[0], "collection": shard[1], "item_id": pending.write.item_id},
        )

    async def _flush_after(self, shard: ShardKey) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000.0)
        async with self._lock:
            self._timers.pop(shard, None)
            batch = self._buffers.pop(shard, [])
            if batch:
                # From here on the timer is a flush that shutdown() must wait for
                self._track(asyncio.current_task())
        if batch:
            await self._flush_batch(shard, batch)

    def _track(self, task: asyncio.Task) -> None:
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    def _spawn_flush(self, shard: ShardKey, batch: list[PendingWrite]) -> None:
        self._track(asyncio.create_task(self._flush_batch(shard, batch)))

    async def _put(self, upload: BlobUpload) -> None:
        store = self.pool.object_store(upload.blob.store_key)
        await retry_storage(
            lambda: store.put(upload.blob.bucket, upload.blob.key, upload.body, upload.blob.content_type),
            self.config.max_retries,
            self.config.retry_delay_ms,
            f"Put {upload.blob.bucket}/{upload.blob.key}",
        )

    async def _upload_all(self, uploads: list[BlobUpload]) -> None:
        await asyncio.gather(*(self._put(upload) for upload in uploads))

    @staticmethod
    def _settle(pending: PendingWrite, outcome: BatchOutcome | Exception) -> None:
        if pending.future.done():
            return
        if isinstance(outcome, Exception):
            pending.future.set_exception(outcome)
        else:
            pending.future.set_result(outcome)

    async def _flush_batch(self, shard: ShardKey, batch: list[PendingWrite]) -> BatchFlushResult:
        """Put every member's blobs, then commit the survivors in one transaction."""
        db_name, collection = shard
        result = BatchFlushResult(db_name=db_name, collection=collection)
        started = time.monotonic()
        try:
            upload_errors = await asyncio.gather(
                *(self._upload_all(p.uploads) for p in batch), return_exceptions=True
            )
            ready = []
            for pending, error in zip(batch, upload_errors):
                if isinstance(error, Exception):
                    self._settle(pending, error)
                    result.outcomes.append((pending.write.item_id, error))
                else:
                    ready.append(pending)

            if ready:
                store = self.pool.metadata_store(ready[0].target)
                writes = [p.write for p in ready]
                try:
                    outcomes = await retry_storage(
                        lambda: store.commit_batch(db_name, writes),
                        self.config.max_retries,
                        self.config.retry_delay_ms,
                        f"Commit batch of {len(writes)} to {db_name}/{collection}",
                    )
                except StorageError as e:
                    outcomes = [e] * len(ready)
                for pending, outcome in zip(ready, outcomes):
                    self._settle(pending, outcome)
                    result.outcomes.append((pending.write.item_id, outcome))
        except Exception as e:
            logger.error(f"Flush of {db_name}/{collection} failed: {e}", exc_info=True)
            for pending in batch:
                self._settle(pending, e)
        finally:
            self._pending -= len(batch)
            self.flush_count += 1

        failed = result.failed
        log = logger.warning if failed else logger.debug
        log(
            "Flushed write batch",
            extra={
                "db_name": db_name,
                "collection": collection,
                "size": len(batch),
                "failed": len(failed),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    async def flush(self) -> list[BatchFlushResult]:
        """Flush every shard buffer now."""
        async with self._lock:
            batches = [(shard, self._take(shard)) for shard in list(self._buffers)]
        results = []
        for shard, batch in batches:
            if batch:
                results.append(await self._flush_batch(shard, batch))
        return results

    async def record_counter_deltas(self, deltas: list[CounterDelta]) -> None:
        """Coalesce counter deltas and flush them after debounce_counters_ms."""
        if not deltas or self.counter_sink is None:
            return
        async with self._counter_lock:
            for delta in deltas:
                key = (delta.scope_key, delta.name)
                current = self._counter_deltas.get(key)
                if current is None:
                    self._counter_deltas[key] = delta
                else:
                    self._counter_deltas[key] = CounterDelta(
                        scope_key=delta.scope_key,
                        name=delta.name,
                        delta=current.delta + delta.delta,
                        at=min(current.at, delta.at),
                    )
        if not self.config.enabled or self.config.debounce_counters_ms == 0:
            await self.flush_counters()
        elif self._counter_timer is None and not self._closed:
            self._counter_timer = asyncio.create_task(self._flush_counters_after())

    async def _flush_counters_after(self) -> None:
        await asyncio.sleep(self.config.debounce_counters_ms / 1000.0)
        self._counter_timer = None
        await self.flush_counters()

    async def flush_counters(self) -> None:
        """Write buffered counter deltas; on failure keep them buffered."""
        async with self._counter_lock:
            deltas = [d for d in self._counter_deltas.values() if d.delta]
            self._counter_deltas.clear()
        if not deltas or self.counter_sink is None:
            return
        try:
            await self.counter_sink(deltas)
        except Exception as e:
            logger.warning(f"Counter flush failed, keeping {len(deltas)} deltas: {e}", exc_info=True)
            async with self._counter_lock:
                # Deltas recorded while the sink ran are merged, keeping the earliest event time
                for delta in deltas:
                    key = (delta.scope_key, delta.name)
                    current = self._counter_deltas.get(key)
                    self._counter_deltas[key] = (
                        delta
                        if current is None
                        else CounterDelta(
                            delta.scope_key, delta.name, delta.delta + current.delta, min(current.at, delta.at)
                        )
                    )
                if self._counter_timer is None and not self._closed:
                    self._counter_timer = asyncio.create_task(self._flush_counters_after())

    async def shutdown(self) -> None:
        """Flush everything, wait for flushes already running and cancel timers.

        Returns only after every accepted write has been committed or failed.
        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        results = await self.flush()
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

        if self._counter_timer is not None:
            self._counter_timer.cancel()
            self._counter_timer = None
        await self.flush_counters()
        if self._counter_deltas:
            logger.error(
                "Dropping unflushed counter deltas at shutdown",
                extra={"counters": len(self._counter_deltas)},
            )
        logger.info(
            "Write optimizer shut down",
            extra={"final_batches": len(results), "flushes": self.flush_count},
        )
