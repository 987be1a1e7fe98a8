"""
Local filesystem object store.

Used when no S3 credentials are configured. Blobs live at
``<base_path>/<bucket>/<key>``; writes go to a temporary file and are renamed
into place so readers never see a partial blob.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..errors import NotFoundError, StorageError
from .signing import sign_url

logger = logging.getLogger(__name__)


class LocalObjectStore:
    """Filesystem implementation of ObjectStore.

    Example:
        >>> store = LocalObjectStore("./local-storage")
        >>> await store.connect()
        >>> await store.put("chronos-json", "users/1/v000000-ab.json", b"{}", "application/json")
    """

    def __init__(
        self,
        base_path: str,
        key: str = "local",
        signing_secret: str = "chronos-dev-secret",
    ) -> None:
        self.base_path = Path(base_path).resolve()
        self.key = key
        self._signing_secret = signing_secret
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _path(self, bucket: str, key: str) -> Path:
        parts = [bucket, *key.split("/")]
        if any(part in ("", ".", "..") for part in parts):
            raise StorageError(f"Invalid object key: {bucket}/{key}", backend=self.key, operation="path")
        return self.base_path.joinpath(*parts)

    async def connect(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create local storage at {self.base_path}: {e}",
                backend=self.key,
                operation="connect",
            ) from e
        self._connected = True
        logger.info("Local object store ready", extra={"base_path": str(self.base_path)})

    async def close(self) -> None:
        self._connected = False

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        path = self._path(bucket, key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(body)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Local put failed for {bucket}/{key}: {e}", backend=self.key, operation="put") from e

    async def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Blob not found: {bucket}/{key}", "blob", f"{bucket}/{key}")
        except OSError as e:
            raise StorageError(f"Local get failed for {bucket}/{key}: {e}", backend=self.key, operation="get") from e

    async def head(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()

    async def delete(self, bucket: str, key: str) -> None:
        try:
            self._path(bucket, key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Local delete failed for {bucket}/{key}: {e}", backend=self.key, operation="delete"
            ) from e

    async def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        return sign_url(self.base_path.as_uri(), bucket, key, ttl_seconds, self._signing_secret)
