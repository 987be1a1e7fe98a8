"""
Unit tests for the write optimizer.

Tests cover:
- Size- and time-triggered flushes
- Per-member outcomes in one batch
- Cancellation and capacity accounting
- Storage failure retries and exhaustion
- Counter delta debouncing
- Shutdown while flushes are running
"""

import asyncio
import time

import pytest

from dbaas.chronos_server.config import WriteOptimizationConfig
from dbaas.chronos_server.counters import CounterDelta
from dbaas.chronos_server.errors import CapacityError, ConflictError, StorageError
from dbaas.chronos_server.routing import Router
from dbaas.chronos_server.storage import BlobRef, ConnectionPool, VersionWrite, WriteOp
from dbaas.chronos_server.write import BlobUpload, WriteOptimizer


def make_write(item_id: str, expected_ov: int | None = None) -> tuple[VersionWrite, list[BlobUpload]]:
    ov = 0 if expected_ov is None else expected_ov + 1
    ref = BlobRef(store_key="mem-0", bucket="chronos-json", key=f"users/{item_id}/v{ov:06d}.json")
    write = VersionWrite(
        collection="users",
        item_id=item_id,
        expected_ov=expected_ov,
        blob=ref,
        meta_indexed={},
        op=WriteOp.CREATE if expected_ov is None else WriteOp.UPDATE,
        actor="user:test",
        reason="",
        created_at=int(time.time() * 1000),
    )
    return write, [BlobUpload(ref, b"{}")]


class OptimizerHarness:
    def __init__(self, config, settings: WriteOptimizationConfig, counter_sink=None):
        self.pool = ConnectionPool(config)
        self.target = Router(config).resolve("runtime", "generic")
        self.optimizer = WriteOptimizer(settings, self.pool, counter_sink)

    @property
    def blobs(self):
        return self.pool.object_store("mem-0")

    @property
    def metadata(self):
        return self.pool.metadata_store(self.target)

    async def submit(self, item_id: str, expected_ov: int | None = None):
        write, uploads = make_write(item_id, expected_ov)
        return await self.optimizer.submit(self.target, write, uploads)


@pytest.fixture
async def harness_factory(config):
    harnesses = []

    async def factory(counter_sink=None, **settings):
        harness = OptimizerHarness(config, WriteOptimizationConfig(**settings), counter_sink)
        await harness.pool.start()
        harnesses.append(harness)
        return harness

    yield factory
    for harness in harnesses:
        await harness.optimizer.shutdown()
        await harness.pool.close()


class TestDirectWrites:
    """Tests with batching disabled."""

    @pytest.mark.asyncio
    async def test_write_goes_straight_through(self, harness_factory):
        h = await harness_factory(enabled=False, retry_delay_ms=1)

        result = await h.submit("a")

        assert result.ov == 0
        assert h.blobs.keys("chronos-json") == ["users/a/v000000.json"]
        assert (await h.metadata.get_head("runtime_generic", "users", "a")).ov == 0
        assert h.optimizer.pending_count == 0

    @pytest.mark.asyncio
    async def test_conflict_surfaces(self, harness_factory):
        h = await harness_factory(enabled=False)
        await h.submit("a")
        with pytest.raises(ConflictError):
            await h.submit("a")
        assert h.optimizer.pending_count == 0


class TestBatching:
    """Tests with batching enabled."""

    @pytest.mark.asyncio
    async def test_size_triggered_flush(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=3, batch_window_ms=60_000)

        results = await asyncio.wait_for(
            asyncio.gather(h.submit("a"), h.submit("b"), h.submit("c")), timeout=5
        )

        assert [r.ov for r in results] == [0, 0, 0]
        assert h.optimizer.flush_count == 1
        assert h.optimizer.pending_count == 0

    @pytest.mark.asyncio
    async def test_time_triggered_flush(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=20)

        started = time.monotonic()
        result = await asyncio.wait_for(h.submit("a"), timeout=5)

        assert result.ov == 0
        assert time.monotonic() - started >= 0.015
        assert h.optimizer.flush_count == 1

    @pytest.mark.asyncio
    async def test_members_succeed_or_fail_individually(self, harness_factory):
        seed = await harness_factory(enabled=False)
        await seed.submit("a")

        h = await harness_factory(enabled=True, batch_size=3, batch_window_ms=60_000)
        outcomes = await asyncio.gather(
            h.submit("a", expected_ov=0),
            h.submit("a", expected_ov=0),
            h.submit("b"),
            return_exceptions=True,
        )

        assert outcomes[0].ov == 1
        assert isinstance(outcomes[1], ConflictError)
        assert outcomes[2].ov == 0

    @pytest.mark.asyncio
    async def test_flush_drains_buffers(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=60_000)
        tasks = [asyncio.create_task(h.submit(name)) for name in ("a", "b")]
        await asyncio.sleep(0)
        assert h.optimizer.buffered("runtime_generic", "users") == 2

        results = await h.optimizer.flush()

        assert len(results) == 1
        assert len(results[0].succeeded) == 2
        assert [(await t).ov for t in tasks] == [0, 0]

    @pytest.mark.asyncio
    async def test_caller_side_put_when_batch_s3_disabled(self, harness_factory):
        h = await harness_factory(enabled=True, batch_s3=False, batch_size=100, batch_window_ms=60_000)
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0.01)

        assert h.blobs.keys("chronos-json") == ["users/a/v000000.json"]
        assert await h.metadata.get_head("runtime_generic", "users", "a") is None

        await h.optimizer.flush()
        assert (await task).ov == 0


class TestCancellationAndCapacity:
    @pytest.mark.asyncio
    async def test_cancelled_write_is_withdrawn(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=60_000)
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0)
        assert h.optimizer.pending_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert h.optimizer.pending_count == 0
        assert h.optimizer.buffered("runtime_generic", "users") == 0
        await h.optimizer.flush()
        assert await h.metadata.get_head("runtime_generic", "users", "a") is None
        assert h.blobs.keys() == []

    @pytest.mark.asyncio
    async def test_timeout_releases_slot(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=60_000, max_pending_writes=1)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(h.submit("a"), timeout=0.01)

        assert h.optimizer.pending_count == 0
        task = asyncio.create_task(h.submit("b"))
        await asyncio.sleep(0)
        await h.optimizer.flush()
        assert (await task).ov == 0

    @pytest.mark.asyncio
    async def test_capacity_checked_before_caller_side_put(self, harness_factory):
        h = await harness_factory(
            enabled=True, batch_s3=False, batch_size=100, batch_window_ms=60_000, max_pending_writes=1
        )
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0.01)

        with pytest.raises(CapacityError):
            await h.submit("b")

        assert h.blobs.keys("chronos-json") == ["users/a/v000000.json"]
        await h.optimizer.flush()
        assert (await task).ov == 0
        assert h.optimizer.pending_count == 0

    @pytest.mark.asyncio
    async def test_capacity_error_when_full(self, harness_factory):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=60_000, max_pending_writes=2)
        tasks = [asyncio.create_task(h.submit(name)) for name in ("a", "b")]
        await asyncio.sleep(0)

        with pytest.raises(CapacityError) as exc_info:
            await h.submit("c")

        assert exc_info.value.limit == 2
        await h.optimizer.flush()
        assert all(t.result().ov == 0 for t in tasks)


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_put_retried_then_succeeds(self, harness_factory):
        h = await harness_factory(enabled=False, max_retries=3, retry_delay_ms=1)
        h.blobs.inject_failure("put", times=2)

        result = await h.submit("a")

        assert result.ov == 0
        assert h.blobs.operations["put"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_only_that_member(self, harness_factory):
        h = await harness_factory(
            enabled=True, batch_size=2, batch_window_ms=60_000, max_retries=1, retry_delay_ms=0
        )
        # a and b fail their first attempts, a also fails its retry
        h.blobs.inject_failure("put", times=3)

        outcomes = await asyncio.gather(h.submit("a"), h.submit("b"), return_exceptions=True)

        assert isinstance(outcomes[0], StorageError)
        assert outcomes[1].ov == 0
        assert await h.metadata.get_head("runtime_generic", "users", "a") is None
        assert h.optimizer.pending_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_rejects_new_writes(self, harness_factory):
        h = await harness_factory(enabled=True)
        await h.optimizer.shutdown()
        await h.optimizer.shutdown()
        with pytest.raises(StorageError):
            await h.submit("a")


class TestShutdown:
    """Tests for shutdown while flushes are running."""

    @staticmethod
    def slow_puts(h, monkeypatch, seconds: float = 0.2):
        put = h.blobs.put

        async def slow_put(*args):
            await asyncio.sleep(seconds)
            await put(*args)

        monkeypatch.setattr(h.blobs, "put", slow_put)

    @pytest.mark.asyncio
    async def test_waits_for_timer_flush_in_progress(self, harness_factory, monkeypatch):
        h = await harness_factory(enabled=True, batch_size=100, batch_window_ms=10, retry_delay_ms=1)
        self.slow_puts(h, monkeypatch)
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0.05)
        assert h.optimizer.buffered("runtime_generic", "users") == 0
        assert h.optimizer.pending_count == 1

        await h.optimizer.shutdown()

        assert task.done()
        assert task.result().ov == 0
        assert (await h.metadata.get_head("runtime_generic", "users", "a")).ov == 0
        assert h.optimizer.pending_count == 0

    @pytest.mark.asyncio
    async def test_waits_for_size_flush_in_progress(self, harness_factory, monkeypatch):
        h = await harness_factory(enabled=True, batch_size=2, batch_window_ms=60_000)
        self.slow_puts(h, monkeypatch)
        tasks = [asyncio.create_task(h.submit(name)) for name in ("a", "b")]
        await asyncio.sleep(0.05)

        await h.optimizer.shutdown()

        assert [t.result().ov for t in tasks] == [0, 0]

    @pytest.mark.asyncio
    async def test_waits_for_direct_write_in_progress(self, harness_factory, monkeypatch):
        h = await harness_factory(enabled=False)
        self.slow_puts(h, monkeypatch)
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0.05)

        await h.optimizer.shutdown()

        assert task.result().ov == 0
        assert (await h.metadata.get_head("runtime_generic", "users", "a")).ov == 0

    @pytest.mark.asyncio
    async def test_cancelled_direct_write_does_not_block_shutdown(self, harness_factory, monkeypatch):
        h = await harness_factory(enabled=False)
        self.slow_puts(h, monkeypatch)
        task = asyncio.create_task(h.submit("a"))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(h.optimizer.shutdown(), timeout=1)

        assert await h.metadata.get_head("runtime_generic", "users", "a") is None
        assert h.optimizer.pending_count == 0


class TestCounterDebounce:
    @pytest.mark.asyncio
    async def test_deltas_coalesced(self, harness_factory):
        received = []

        async def sink(deltas):
            received.append(deltas)

        h = await harness_factory(sink, enabled=True, debounce_counters_ms=20)
        for _ in range(3):
            await h.optimizer.record_counter_deltas([CounterDelta("meta", "active", 1, 1_000)])
        await h.optimizer.record_counter_deltas([CounterDelta("meta", "active", -1, 2_000)])
        await asyncio.sleep(0.1)

        assert received == [[CounterDelta("meta", "active", 2, 1_000)]]

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_deltas(self, harness_factory):
        calls = []

        async def flaky_sink(deltas):
            calls.append(deltas)
            if len(calls) == 1:
                raise StorageError("counter store down")

        h = await harness_factory(flaky_sink, enabled=True, debounce_counters_ms=60_000)
        await h.optimizer.record_counter_deltas([CounterDelta("meta", "active", 1, 1_000)])

        await h.optimizer.flush_counters()
        await h.optimizer.flush_counters()

        assert len(calls) == 2
        assert calls[1] == [CounterDelta("meta", "active", 1, 1_000)]
        await h.optimizer.shutdown()

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_earliest_event_time(self, harness_factory):
        release = asyncio.Event()
        calls = []

        async def slow_failing_sink(deltas):
            calls.append(deltas)
            if len(calls) == 1:
                await release.wait()
                raise StorageError("counter store down")

        h = await harness_factory(slow_failing_sink, enabled=True, debounce_counters_ms=60_000)
        await h.optimizer.record_counter_deltas([CounterDelta("meta", "active", 1, 1_000)])
        flushing = asyncio.create_task(h.optimizer.flush_counters())
        await asyncio.sleep(0)

        await asyncio.wait_for(
            h.optimizer.record_counter_deltas([CounterDelta("meta", "active", 2, 5_000)]), timeout=1
        )
        release.set()
        await flushing
        await h.optimizer.flush_counters()

        assert calls[1] == [CounterDelta("meta", "active", 3, 1_000)]
        await h.optimizer.shutdown()
