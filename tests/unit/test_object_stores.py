"""
Unit tests for object stores, URL signing and the presign gateway.
"""

import pytest

from dbaas.chronos_server.config import ObjectStoreConnection
from dbaas.chronos_server.errors import ConfigurationError, NotFoundError, StorageError, ValidationError
from dbaas.chronos_server.presign import MAX_TTL_SECONDS, PresignGateway, verify_signed_url
from dbaas.chronos_server.routing import Router
from dbaas.chronos_server.storage import (
    BlobRef,
    ConnectionPool,
    LocalObjectStore,
    MemoryObjectStore,
    S3ObjectStore,
    create_object_store,
    sign_url,
)

SECRET = "test-secret"


class TestMemoryObjectStore:
    """Tests for MemoryObjectStore."""

    @pytest.fixture
    async def store(self):
        store = MemoryObjectStore(key="mem", signing_secret=SECRET)
        await store.connect()
        return store

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        store = MemoryObjectStore()
        with pytest.raises(StorageError):
            await store.put("b", "k", b"x", "text/plain")

    @pytest.mark.asyncio
    async def test_put_get_head_delete(self, store):
        await store.put("b", "users/1.json", b"{}", "application/json")

        assert await store.get("b", "users/1.json") == b"{}"
        assert await store.head("b", "users/1.json")
        await store.delete("b", "users/1.json")
        assert not await store.head("b", "users/1.json")

    @pytest.mark.asyncio
    async def test_missing_blob(self, store):
        with pytest.raises(NotFoundError):
            await store.get("b", "missing")

    @pytest.mark.asyncio
    async def test_injected_failures(self, store):
        store.inject_failure("put", times=2)

        for _ in range(2):
            with pytest.raises(StorageError) as exc_info:
                await store.put("b", "k", b"x", "text/plain")
            assert exc_info.value.retryable
        await store.put("b", "k", b"x", "text/plain")

        assert store.operations["put"] == 3
        assert store.keys("b") == ["k"]

    @pytest.mark.asyncio
    async def test_presigned_url_verifies(self, store):
        url = await store.presign("b", "users/1.json", 60)
        assert url.startswith("memory://mem/b/users/1.json?")
        assert verify_signed_url(url, SECRET)
        assert not verify_signed_url(url, "other-secret")


class TestLocalObjectStore:
    """Tests for LocalObjectStore."""

    @pytest.fixture
    async def store(self, data_dir):
        store = LocalObjectStore(f"{data_dir}/blobs", signing_secret=SECRET)
        await store.connect()
        return store

    @pytest.mark.asyncio
    async def test_round_trip_on_disk(self, store):
        await store.put("chronos-json", "users/a/v000000-ff.json", b'{"a":1}', "application/json")

        assert (store.base_path / "chronos-json" / "users" / "a" / "v000000-ff.json").is_file()
        assert await store.get("chronos-json", "users/a/v000000-ff.json") == b'{"a":1}'

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, store):
        with pytest.raises(NotFoundError):
            await store.get("chronos-json", "nope.json")
        await store.delete("chronos-json", "nope.json")

    @pytest.mark.asyncio
    async def test_rejects_path_traversal(self, store):
        with pytest.raises(StorageError):
            await store.put("chronos-json", "../escape.json", b"x", "application/json")

    @pytest.mark.asyncio
    async def test_presign_uses_file_url(self, store):
        url = await store.presign("chronos-json", "k.json", 60)
        assert url.startswith("file://")
        assert verify_signed_url(url, SECRET)


class TestSignedUrls:
    def test_expired_url_rejected(self):
        url = sign_url("memory://m", "b", "k", 10, SECRET, now=1_000)
        assert verify_signed_url(url, SECRET, now=1_005)
        assert not verify_signed_url(url, SECRET, now=1_011)

    def test_tampered_path_rejected(self):
        url = sign_url("memory://m", "b", "k", 10, SECRET, now=1_000)
        assert not verify_signed_url(url.replace("/k?", "/other?"), SECRET, now=1_000)

    def test_unsigned_url_rejected(self):
        assert not verify_signed_url("memory://m/b/k", SECRET)


class TestStoreFactory:
    def test_kind_selects_backend(self, data_dir):
        assert isinstance(
            create_object_store(ObjectStoreConnection(key="m", endpoint="memory://"), SECRET),
            MemoryObjectStore,
        )
        assert isinstance(
            create_object_store(ObjectStoreConnection(key="l", endpoint=f"file://{data_dir}"), SECRET),
            LocalObjectStore,
        )
        assert isinstance(
            create_object_store(
                ObjectStoreConnection(key="s", endpoint="http://localhost:9000", force_path_style=True),
                SECRET,
            ),
            S3ObjectStore,
        )


class TestPresignGateway:
    """Tests for PresignGateway."""

    @pytest.fixture
    async def pool(self, config):
        pool = ConnectionPool(config)
        await pool.start()
        yield pool
        await pool.close()

    @pytest.mark.asyncio
    async def test_presign_blob(self, pool, config):
        gateway = PresignGateway(pool, default_ttl_seconds=300)
        ref = BlobRef(store_key="mem-0", bucket="chronos-content", key="users/a/v000000-aa.avatar.bin")

        url = await gateway.presign(ref)

        assert verify_signed_url(url, config.presign.signing_secret)

    @pytest.mark.parametrize("ttl", [0, -1, MAX_TTL_SECONDS + 1, True, 1.5])
    def test_ttl_bounds(self, config, ttl):
        with pytest.raises(ValidationError):
            PresignGateway(ConnectionPool(config)).resolve_ttl(ttl)

    def test_ttl_default_and_max(self, config):
        gateway = PresignGateway(ConnectionPool(config), default_ttl_seconds=120)
        assert gateway.resolve_ttl(None) == 120
        assert gateway.resolve_ttl(MAX_TTL_SECONDS) == MAX_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_unknown_store(self, pool):
        ref = BlobRef(store_key="nope", bucket="b", key="k")
        with pytest.raises(ConfigurationError):
            await PresignGateway(pool).presign(ref, 60)


class TestConnectionPool:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config):
        pool = ConnectionPool(config)
        await pool.start()
        await pool.close()
        await pool.close()
        assert not pool.object_store("mem-0").is_connected

    @pytest.mark.asyncio
    async def test_metadata_store_shared_per_connection(self, config):
        pool = ConnectionPool(config)
        router = Router(config)
        a = pool.metadata_store(router.resolve("runtime", "tenant-a"))
        b = pool.metadata_store(router.resolve("runtime", "tenant-b"))
        assert a is b
        await pool.close()
        with pytest.raises(StorageError):
            pool.metadata_store(router.resolve("runtime", "tenant-a"))
