"""
S3-compatible object store (AWS S3, DigitalOcean Spaces, MinIO).

Invariants:
    - One aiobotocore client per connection, opened by connect()
    - Presigned URLs use SigV4 with path-style or virtual-hosted addressing
      per the connection's force_path_style flag
    - botocore errors are translated: missing objects -> NotFoundError,
      everything else -> StorageError

How to change safely:
    - Test against MinIO before changing addressing or signature settings
    - Never log credentials
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import ObjectStoreConnection
from ..errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class S3ObjectStore:
    """aiobotocore implementation of ObjectStore.

    Example:
        >>> store = S3ObjectStore(connection)
        >>> await store.connect()
        >>> url = await store.presign("chronos-json", "users/1/v000000-ab.json", 600)
    """

    def __init__(self, connection: ObjectStoreConnection) -> None:
        self.connection = connection
        self.key = connection.key
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.connection.region,
            "config": Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if self.connection.force_path_style else "virtual"},
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        }
        if self.connection.endpoint:
            client_kwargs["endpoint_url"] = self.connection.endpoint
        if self.connection.access_key:
            client_kwargs["aws_access_key_id"] = self.connection.access_key
            client_kwargs["aws_secret_access_key"] = self.connection.secret_key

        try:
            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 connection failed: {e}", backend=self.key, operation="connect") from e
        logger.info(
            "S3 object store connected",
            extra={
                "store_key": self.key,
                "endpoint": self.connection.endpoint,
                "path_style": self.connection.force_path_style,
            },
        )

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None

    def _client(self, operation: str) -> Any:
        if self._s3_client is None:
            raise StorageError("Not connected", backend=self.key, operation=operation)
        return self._s3_client

    def _translate(self, e: Exception, operation: str, bucket: str, key: str) -> Exception:
        if isinstance(e, ClientError):
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return NotFoundError(f"Blob not found: {bucket}/{key}", "blob", f"{bucket}/{key}")
        return StorageError(
            f"S3 {operation} failed for {bucket}/{key}: {e}",
            backend=self.key,
            operation=operation,
        )

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        client = self._client("put")
        try:
            await client.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, "put", bucket, key) from e

    async def get(self, bucket: str, key: str) -> bytes:
        client = self._client("get")
        try:
            response = await client.get_object(Bucket=bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, "get", bucket, key) from e

    async def head(self, bucket: str, key: str) -> bool:
        client = self._client("head")
        try:
            await client.head_object(Bucket=bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            translated = self._translate(e, "head", bucket, key)
            if isinstance(translated, NotFoundError):
                return False
            raise translated from e

    async def delete(self, bucket: str, key: str) -> None:
        client = self._client("delete")
        try:
            await client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            translated = self._translate(e, "delete", bucket, key)
            if not isinstance(translated, NotFoundError):
                raise translated from e

    async def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        client = self._client("presign")
        try:
            return await client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, "presign", bucket, key) from e
