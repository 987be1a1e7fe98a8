"""
Integration tests for the engine facade.

Tests cover:
- Context binding by database name and by tier/scope
- Tenant isolation
- Timeouts and lifecycle (lazy start, shutdown, context manager)
- Admin operations
"""

import asyncio

import pytest

from dbaas.chronos_server import Chronos, init_chronos
from dbaas.chronos_server.config import CounterRule, RollupConfig, RoutingConfig, WriteOptimizationConfig
from dbaas.chronos_server.errors import ConfigurationError, NotFoundError, StorageError, ValidationError

ACTOR = "user:test"


class TestWithContext:
    """Tests for Chronos.with_context."""

    def test_by_db_name(self, chronos):
        ops = chronos.with_context("users", db_name="runtime_tenant_a")
        assert ops.db_name == "runtime_tenant_a"
        assert ops.collection == "users"

    def test_by_tier_and_identifier(self, chronos):
        assert chronos.with_context("users", tier="runtime", ext_identifier="tenant-b").db_name == "runtime_tenant_b"
        assert chronos.with_context("users", tier="runtime").db_name == "runtime_generic"

    @pytest.mark.parametrize("name", ["", "has space", "../escape", "a/b", ".hidden", "x" * 129, None])
    def test_invalid_collection_name(self, chronos, name):
        with pytest.raises(ValidationError):
            chronos.with_context(name, db_name="runtime_generic")

    def test_exactly_one_address(self, chronos):
        with pytest.raises(ValidationError):
            chronos.with_context("users")
        with pytest.raises(ValidationError):
            chronos.with_context("users", db_name="runtime_generic", tier="runtime")

    def test_unknown_database(self, chronos):
        with pytest.raises(NotFoundError):
            chronos.with_context("users", db_name="nope")

    def test_unknown_tier(self, chronos):
        with pytest.raises(ConfigurationError):
            chronos.with_context("users", tier="archive")

    @pytest.mark.asyncio
    async def test_collection_in_routing_key(self, make_chronos):
        chronos = make_chronos(routing=RoutingConfig(choose_key="tenantId|collection"))
        users = chronos.with_context("users", tier="runtime", ext_identifier="tenant-a")
        items = chronos.with_context("items", tier="runtime", ext_identifier="tenant-a")

        assert users.target.routing_key == "tenant-a|users"
        assert items.target.routing_key == "tenant-a|items"

        created = await users.create({"email": "a@x.io"}, actor=ACTOR)
        assert (await users.get_latest(created.id)).item == {"email": "a@x.io"}

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, chronos):
        tenant_a = chronos.with_context("users", tier="runtime", ext_identifier="tenant-a")
        tenant_b = chronos.with_context("users", tier="runtime", ext_identifier="tenant-b")

        created = await tenant_a.create({"email": "a@x.io"}, actor=ACTOR)

        assert await tenant_b.get_latest(created.id) is None
        assert (await tenant_b.list_by_meta()).items == []
        assert (await chronos.admin.stats("runtime_tenant_a"))["items"] == 1
        assert (await chronos.admin.stats("runtime_tenant_b"))["items"] == 0


class TestLifecycle:
    """Tests for startup, timeouts and shutdown."""

    @pytest.mark.asyncio
    async def test_lazy_start(self, chronos):
        assert not chronos.pool.object_store("mem-0").is_connected
        users = chronos.with_context("users", db_name="runtime_generic")
        await users.create({"email": "a@x.io"}, actor=ACTOR)
        assert chronos.pool.object_store("mem-0").is_connected

    @pytest.mark.asyncio
    async def test_shutdown_twice(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        await users.create({"email": "a@x.io"}, actor=ACTOR)

        await chronos.admin.shutdown()
        await chronos.admin.shutdown()

        assert chronos.closed

    @pytest.mark.asyncio
    async def test_operations_after_shutdown(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        await chronos.admin.shutdown()

        with pytest.raises(StorageError):
            await users.create({"email": "a@x.io"}, actor=ACTOR)
        with pytest.raises(StorageError):
            await users.get_latest("any")

    @pytest.mark.asyncio
    async def test_shutdown_drains_buffered_writes(self, make_chronos):
        chronos = make_chronos(
            write_optimization=WriteOptimizationConfig(enabled=True, batch_size=100, batch_window_ms=60_000)
        )
        users = chronos.with_context("users", db_name="runtime_generic")
        await chronos.start(background=False)
        task = asyncio.create_task(users.create({"email": "a@x.io"}, actor=ACTOR))
        await asyncio.sleep(0.01)
        assert chronos.optimizer.pending_count == 1

        await chronos.admin.shutdown()

        assert (await task).ov == 0

    @pytest.mark.parametrize("batching", [True, False])
    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_flush(self, make_chronos, monkeypatch, batching):
        settings = WriteOptimizationConfig(enabled=batching, batch_window_ms=10, retry_delay_ms=1)
        chronos = make_chronos(write_optimization=settings)
        users = chronos.with_context("users", db_name="runtime_generic")
        await chronos.start(background=False)
        blobs = chronos.pool.object_store("mem-0")
        put = blobs.put

        async def slow_put(*args):
            await asyncio.sleep(0.2)
            await put(*args)

        monkeypatch.setattr(blobs, "put", slow_put)
        task = asyncio.create_task(users.create({"email": "a@x.io"}, actor=ACTOR))
        await asyncio.sleep(0.05)

        await chronos.admin.shutdown()

        assert (await task).ov == 0
        reopened = make_chronos(write_optimization=settings)
        assert (await reopened.admin.stats("runtime_generic"))["items"] == 1

    @pytest.mark.asyncio
    async def test_timeout_withdraws_buffered_write(self, make_chronos):
        chronos = make_chronos(
            write_optimization=WriteOptimizationConfig(enabled=True, batch_size=100, batch_window_ms=60_000)
        )
        users = chronos.with_context("users", db_name="runtime_generic")

        with pytest.raises(asyncio.TimeoutError):
            await users.create({"email": "a@x.io"}, actor=ACTOR, timeout=0.05)

        assert chronos.optimizer.pending_count == 0
        await chronos.admin.flush()
        assert (await chronos.admin.stats("runtime_generic"))["items"] == 0

    @pytest.mark.asyncio
    async def test_read_timeout_not_hit(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        created = await users.create({"email": "a@x.io"}, actor=ACTOR, timeout=5)
        assert (await users.get_latest(created.id, timeout=5)).meta.ov == 0

    @pytest.mark.asyncio
    async def test_async_context_manager(self, config):
        async with Chronos(config) as chronos:
            users = chronos.with_context("users", db_name="runtime_generic")
            await users.create({"email": "a@x.io"}, actor=ACTOR)
        assert chronos.closed

    @pytest.mark.asyncio
    async def test_init_with_invalid_config(self, make_config):
        with pytest.raises(ConfigurationError):
            init_chronos(make_config(object_stores=()))


class TestAdmin:
    """Tests for ChronosAdmin."""

    @pytest.mark.asyncio
    async def test_stats(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        created = await users.create({"email": "a@x.io"}, actor=ACTOR)
        await users.update(created.id, {"email": "b@x.io"}, expected_ov=0, actor=ACTOR)
        other = await users.create({"email": "c@x.io"}, actor=ACTOR)
        await users.delete(other.id, expected_ov=0, actor=ACTOR)

        assert await chronos.admin.stats("runtime_generic") == {"items": 2, "versions": 4, "deleted_items": 1}

    @pytest.mark.asyncio
    async def test_rollup_and_buckets(self, make_chronos):
        chronos = make_chronos(
            counter_rules=(CounterRule(name="signups", on=("CREATE",)),),
            rollup=RollupConfig(enabled=True, interval_seconds=3600),
        )
        await chronos.start(background=False)
        users = chronos.with_context("users", db_name="runtime_generic")
        for n in range(3):
            await users.create({"email": f"{n}@x.io"}, actor=ACTOR)

        result = await chronos.admin.rollup()

        assert result.events_rolled == 3
        assert await chronos.admin.counter_total("signups") == 3
        buckets = await chronos.admin.counter_buckets("signups", "day")
        assert [b.value for b in buckets] == [3]
        assert [b.value for b in await chronos.admin.counter_buckets("signups", "month")] == [3]

    @pytest.mark.asyncio
    async def test_flush_with_nothing_buffered(self, chronos):
        assert await chronos.admin.flush() == []
