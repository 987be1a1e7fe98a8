"""
Presign gateway for Chronos.

Issues time-limited URLs for direct blob access. The capability lives entirely
in the URL: nothing is persisted and presigning has no side effects.

- S3 connections sign with SigV4 through the aiobotocore client
- Local and in-memory stores issue HMAC-SHA256 signed URLs, checked with
  verify_signed_url()
"""

from __future__ import annotations

import logging
from typing import Any

from ..config import Base64Prop
from ..errors import ValidationError
from ..storage.base import BlobRef
from ..storage.pool import ConnectionPool
from ..storage.signing import verify_signed_url
from ..versioning.payload import content_blobs
from ..versioning.types import PresignedGrant

logger = logging.getLogger(__name__)

# Longest expiry SigV4 accepts
MAX_TTL_SECONDS = 604800

__all__ = ["MAX_TTL_SECONDS", "PresignGateway", "verify_signed_url"]


class PresignGateway:
    """Stateless URL signer over the pooled object stores.

    Example:
        >>> gateway = PresignGateway(pool, default_ttl_seconds=3600)
        >>> url = await gateway.presign(blob_ref, ttl_seconds=600)
    """

    def __init__(self, pool: ConnectionPool, default_ttl_seconds: int = 3600) -> None:
        self.pool = pool
        self.default_ttl_seconds = default_ttl_seconds

    def resolve_ttl(self, ttl_seconds: int | None) -> int:
        """Apply the default TTL and check bounds.

        Raises:
            ValidationError: If the TTL is outside 1..604800 seconds
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if isinstance(ttl, bool) or not isinstance(ttl, int) or not 1 <= ttl <= MAX_TTL_SECONDS:
            raise ValidationError(
                f"ttl_seconds must be between 1 and {MAX_TTL_SECONDS}, got {ttl!r}",
                field_name="ttl_seconds",
            )
        return ttl

    async def presign(self, blob: BlobRef, ttl_seconds: int | None = None) -> str:
        ttl = self.resolve_ttl(ttl_seconds)
        store = self.pool.object_store(blob.store_key)
        return await store.presign(blob.bucket, blob.key, ttl)

    async def grants_for(
        self,
        payload: dict[str, Any],
        base64_props: dict[str, Base64Prop],
        ttl_seconds: int | None = None,
    ) -> dict[str, PresignedGrant]:
        """Grants for every externalized content field present in a payload."""
        ttl = self.resolve_ttl(ttl_seconds)
        grants = {}
        for path, (blob, text_blob) in content_blobs(payload, base64_props).items():
            grants[path] = PresignedGrant(
                blob_url=await self.presign(blob, ttl),
                text_url=await self.presign(text_blob, ttl) if text_blob else None,
                expires_in=ttl,
            )
        return grants
