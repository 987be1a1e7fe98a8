"""
In-memory object store for testing.

This module provides a simple in-process object store for:
- Unit tests
- Integration tests (with failure injection)
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - put() of an existing key replaces the blob
    - Presigned URLs use the ``memory://`` scheme and verify with verify_signed_url()

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ObjectStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging

from ..errors import NotFoundError, StorageError
from .signing import sign_url

logger = logging.getLogger(__name__)


class MemoryObjectStore:
    """In-memory implementation of ObjectStore.

    Attributes:
        key: Connection key
        operations: Count of calls per operation name

    Example:
        >>> store = MemoryObjectStore()
        >>> await store.connect()
        >>> await store.put("json", "users/1/v000000-ab.json", b"{}", "application/json")
        >>> store.inject_failure("put", times=2)  # next two puts raise StorageError
    """

    def __init__(self, key: str = "memory", signing_secret: str = "chronos-dev-secret") -> None:
        self.key = key
        self._signing_secret = signing_secret
        self._objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self._failures: dict[str, int] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self.operations: dict[str, int] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("MemoryObjectStore connected", extra={"store_key": self.key})

    async def close(self) -> None:
        """Disconnect. Stored blobs are kept so tests can inspect them."""
        self._connected = False
        logger.debug("MemoryObjectStore closed", extra={"store_key": self.key})

    def inject_failure(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise StorageError."""
        self._failures[operation] = self._failures.get(operation, 0) + times

    def _begin(self, operation: str) -> None:
        self.operations[operation] = self.operations.get(operation, 0) + 1
        if not self._connected:
            raise StorageError("Not connected", backend=self.key, operation=operation)
        remaining = self._failures.get(operation, 0)
        if remaining > 0:
            self._failures[operation] = remaining - 1
            raise StorageError(f"Injected {operation} failure", backend=self.key, operation=operation)

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        self._begin("put")
        async with self._lock:
            self._objects[(bucket, key)] = (bytes(body), content_type)

    async def get(self, bucket: str, key: str) -> bytes:
        self._begin("get")
        entry = self._objects.get((bucket, key))
        if entry is None:
            raise NotFoundError(f"Blob not found: {bucket}/{key}", "blob", f"{bucket}/{key}")
        return entry[0]

    async def head(self, bucket: str, key: str) -> bool:
        self._begin("head")
        return (bucket, key) in self._objects

    async def delete(self, bucket: str, key: str) -> None:
        self._begin("delete")
        async with self._lock:
            self._objects.pop((bucket, key), None)

    async def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        return sign_url(f"memory://{self.key}", bucket, key, ttl_seconds, self._signing_secret)

    def keys(self, bucket: str | None = None) -> list[str]:
        """Stored keys, optionally limited to one bucket."""
        return sorted(k for b, k in self._objects if bucket is None or b == bucket)
