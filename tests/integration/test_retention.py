"""
Integration tests for the retention sweeper.

Tests cover:
- Pruning by max versions per item and by age
- Current versions are never pruned
- Orphaned payload blobs are deleted, shared blobs are kept
- Expired dev shadows are cleared
"""

import time

import pytest

from dbaas.chronos_server.config import DevShadowConfig, RetentionConfig, VersionRetention
from dbaas.chronos_server.retention.sweeper import DAY_MS

ACTOR = "user:test"


async def build_chain(users, versions: int) -> str:
    created = await users.create({"email": "v0@x.io"}, actor=ACTOR)
    for ov in range(versions - 1):
        await users.update(created.id, {"email": f"v{ov + 1}@x.io"}, expected_ov=ov, actor=ACTOR)
    return created.id


def payload_keys(chronos) -> list[str]:
    return chronos.pool.object_store("mem-0").keys("chronos-json")


class TestRetentionSweep:
    """Tests for RetentionSweeper.sweep_once via the admin API."""

    @pytest.mark.asyncio
    async def test_no_policy_keeps_everything(self, chronos):
        users = chronos.with_context("users", db_name="runtime_generic")
        item_id = await build_chain(users, 3)

        result = await chronos.admin.sweep()

        assert result.databases == 3
        assert result.versions_deleted == 0
        assert len(await users.history(item_id)) == 3

    @pytest.mark.asyncio
    async def test_max_per_item(self, make_chronos):
        chronos = make_chronos(
            retention=RetentionConfig(ver=VersionRetention(max_per_item=2), sweeper_enabled=False)
        )
        users = chronos.with_context("users", db_name="runtime_generic")
        item_id = await build_chain(users, 5)
        assert len(payload_keys(chronos)) == 5

        result = await chronos.admin.sweep()

        assert result.versions_deleted == 3
        assert result.blobs_deleted == 3
        assert [h.ov for h in await users.history(item_id)] == [3, 4]
        assert await users.get_version(item_id, 0) is None
        assert (await users.get_version(item_id, 3)).item == {"email": "v3@x.io"}
        assert len(payload_keys(chronos)) == 2

    @pytest.mark.asyncio
    async def test_age_keeps_current_version(self, make_chronos):
        chronos = make_chronos(retention=RetentionConfig(ver=VersionRetention(days=30), sweeper_enabled=False))
        users = chronos.with_context("users", db_name="runtime_generic")
        item_id = await build_chain(users, 3)
        now = int(time.time() * 1000)

        recent = await chronos.admin.sweep(now_ms=now)
        later = await chronos.admin.sweep(now_ms=now + 31 * DAY_MS)

        assert recent.versions_deleted == 0
        assert later.versions_deleted == 2
        latest = await users.get_latest(item_id)
        assert latest.meta.ov == 2
        assert latest.item == {"email": "v2@x.io"}

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, make_chronos):
        chronos = make_chronos(
            retention=RetentionConfig(ver=VersionRetention(max_per_item=1), sweeper_enabled=False)
        )
        users = chronos.with_context("users", db_name="runtime_generic")
        await build_chain(users, 3)

        await chronos.admin.sweep()
        again = await chronos.admin.sweep()

        assert again.versions_deleted == 0
        assert again.blobs_deleted == 0

    @pytest.mark.asyncio
    async def test_tombstone_keeps_shared_blob(self, make_chronos):
        chronos = make_chronos(
            retention=RetentionConfig(ver=VersionRetention(max_per_item=1), sweeper_enabled=False)
        )
        users = chronos.with_context("users", db_name="runtime_generic")
        item_id = await build_chain(users, 2)
        await users.delete(item_id, expected_ov=1, actor=ACTOR)

        result = await chronos.admin.sweep()

        assert result.versions_deleted == 2
        assert result.blobs_deleted == 1
        latest = await users.get_latest(item_id)
        assert latest.deleted
        assert latest.item == {"email": "v1@x.io"}

    @pytest.mark.asyncio
    async def test_blob_delete_failure_is_reported(self, make_chronos):
        chronos = make_chronos(
            retention=RetentionConfig(ver=VersionRetention(max_per_item=1), sweeper_enabled=False)
        )
        users = chronos.with_context("users", db_name="runtime_generic")
        item_id = await build_chain(users, 2)
        chronos.pool.object_store("mem-0").inject_failure("delete", times=100)

        result = await chronos.admin.sweep()

        assert result.versions_deleted == 1
        assert len(result.blob_failures) == 1
        assert [h.ov for h in await users.history(item_id)] == [1]

    @pytest.mark.asyncio
    async def test_expired_shadows_cleared(self, make_chronos):
        chronos = make_chronos(dev_shadow=DevShadowConfig(enabled=True, ttl_hours=1))
        users = chronos.with_context("users", db_name="runtime_generic")
        created = await users.create({"email": "a@x.io"}, actor=ACTOR)

        result = await chronos.admin.sweep(now_ms=int(time.time() * 1000) + 2 * 3600 * 1000)

        assert result.shadows_cleared == 1
        head = await chronos.pool.metadata_store(users.target).get_head("runtime_generic", "users", created.id)
        assert head.shadow is None
        assert (await users.get_latest(created.id)).item == {"email": "a@x.io"}
