"""
Connection pools for Chronos storage backends.

The pool owns one metadata store per metadata connection (pinned database
URIs get their own store) and one object store per object store connection.
Stores are opened at start() and closed exactly once by close().
"""

from __future__ import annotations

import logging
from urllib.parse import unquote, urlsplit

from ..config import ChronosConfig, ObjectStoreConnection, sqlite_data_dir
from ..errors import ConfigurationError, StorageError
from ..routing import RouteTarget
from .base import ObjectStore
from .local_objects import LocalObjectStore
from .memory_objects import MemoryObjectStore
from .s3_objects import S3ObjectStore
from .sqlite_metadata import SqliteMetadataStore

logger = logging.getLogger(__name__)


def create_object_store(connection: ObjectStoreConnection, signing_secret: str) -> ObjectStore:
    """Instantiate the backend selected by the connection's endpoint scheme."""
    if connection.kind == "memory":
        return MemoryObjectStore(key=connection.key, signing_secret=signing_secret)
    if connection.kind == "local":
        base_path = unquote(urlsplit(connection.endpoint).path)
        return LocalObjectStore(base_path, key=connection.key, signing_secret=signing_secret)
    return S3ObjectStore(connection)


class ConnectionPool:
    """Pooled metadata and object store connections.

    Example:
        >>> pool = ConnectionPool(config)
        >>> await pool.start()
        >>> store = pool.metadata_store(target)
        >>> blobs = pool.object_store(target.object_store_key)
        >>> await pool.close()
    """

    def __init__(self, config: ChronosConfig) -> None:
        self.config = config
        self._metadata: dict[str, SqliteMetadataStore] = {}
        self._objects: dict[str, ObjectStore] = {
            conn.key: create_object_store(conn, config.presign.signing_secret)
            for conn in config.object_stores
        }
        self._connections = {conn.key: conn for conn in config.object_stores}
        self._started = False
        self._closed = False

    async def start(self) -> None:
        """Connect every object store."""
        if self._started:
            return
        for key, store in self._objects.items():
            await store.connect()
            logger.debug("Object store connected", extra={"store_key": key})
        self._started = True

    def metadata_store(self, target: RouteTarget) -> SqliteMetadataStore:
        """Metadata store serving a route (created on first use)."""
        return self.metadata_store_for(target.metadata_key, target.metadata_uri)

    def metadata_store_for(self, key: str, uri: str) -> SqliteMetadataStore:
        if self._closed:
            raise StorageError("Connection pool is closed", backend=key, operation="connect")
        store = self._metadata.get(key)
        if store is None:
            sqlite = self.config.sqlite
            store = SqliteMetadataStore(
                sqlite_data_dir(uri),
                key=key,
                wal_mode=sqlite.wal_mode,
                busy_timeout_ms=sqlite.busy_timeout_ms,
                cache_size_pages=sqlite.cache_size_pages,
            )
            self._metadata[key] = store
        return store

    def object_store(self, key: str) -> ObjectStore:
        store = self._objects.get(key)
        if store is None:
            raise ConfigurationError(f"Unknown object store: {key}", setting="object_stores")
        return store

    def object_connection(self, key: str) -> ObjectStoreConnection:
        connection = self._connections.get(key)
        if connection is None:
            raise ConfigurationError(f"Unknown object store: {key}", setting="object_stores")
        return connection

    async def close(self) -> None:
        """Close every store. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for store in self._metadata.values():
            await store.close()
        for key, store in self._objects.items():
            try:
                await store.close()
            except StorageError as e:
                logger.warning(f"Error closing object store {key}: {e}")
        logger.info("Connection pool closed")
