"""
Version manager for Chronos.

Owns the append-only version chain of every item:
- Writes each version's payload to the object store under a unique key
- Records per-version metadata through a compare-and-swap on the item's ov
- Reads latest, by version number, and as-of a timestamp

Write path:
    1. Validate the payload against the collection map
    2. Externalize base64 content fields to the content bucket
    3. Hand the blob uploads and the conditional metadata write to the
       write optimizer (batched or direct)
    4. Derive counter deltas from the committed change

Invariants:
    - ov starts at 0 and advances by exactly 1 per committed write
    - A version is never rewritten; restore appends a copy
    - A tombstone shares the payload blob of the version it replaces, so reads
      of a deleted item show its last payload with deleted_at set
    - update() never retries; enrich() retries on conflict up to a bound

How to change safely:
    - Keep blob keys unique per attempt; retries must never overwrite a
      committed blob
    - New write kinds need a WriteOp and a counter event mapping
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from ..config import ChronosConfig, CollectionMap
from ..counters.engine import CounterEngine
from ..errors import ConflictError, NotFoundError, ValidationError
from ..presign.gateway import PresignGateway
from ..routing import RouteTarget
from ..storage.base import BlobRef, CommitResult, ItemHead, VersionRecord, VersionWrite, WriteOp
from ..storage.pool import ConnectionPool
from ..storage.sqlite_metadata import SqliteMetadataStore
from ..write.optimizer import BlobUpload, WriteOptimizer
from .payload import (
    apply_projection,
    blob_key,
    content_blobs,
    content_ref,
    decode_payload,
    deep_merge,
    encode_payload,
    extract_content,
    project_indexed,
    replace_field,
    validate_payload,
)
from .types import ItemMeta, ItemView, VersionInfo, WriteResult

logger = logging.getLogger(__name__)

_COUNTER_EVENTS = {
    WriteOp.CREATE: "CREATE",
    WriteOp.UPDATE: "UPDATE",
    WriteOp.ENRICH: "UPDATE",
    WriteOp.RESTORE: "UPDATE",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_timestamp_ms(value: datetime | str | int | float) -> int:
    """Normalize a datetime, ISO-8601 string or Unix ms value.

    Naive datetimes are taken as UTC.

    Raises:
        ValidationError: If the value cannot be interpreted
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}", field_name="timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid ISO-8601 timestamp: {value!r}", field_name="timestamp")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise ValidationError(f"Invalid timestamp: {value!r}", field_name="timestamp")


class VersionManager:
    """Versioned writes and reads over routed metadata and object stores.

    Every method takes the resolved route and the collection name; the engine's
    CollectionOps binds both.

    Example:
        >>> result = await manager.create(target, "users", {"email": "a@b.c"}, actor="user:1")
        >>> result.ov
        0
        >>> view = await manager.get_latest(target, "users", result.id)
    """

    def __init__(
        self,
        config: ChronosConfig,
        pool: ConnectionPool,
        optimizer: WriteOptimizer,
        presign: PresignGateway,
        counters: CounterEngine | None = None,
    ) -> None:
        self.config = config
        self.pool = pool
        self.optimizer = optimizer
        self.presign = presign
        self.counters = counters

    async def store_for(self, target: RouteTarget, collection: str) -> SqliteMetadataStore:
        """Metadata store for a route with the collection's indexes in place."""
        store = self.pool.metadata_store(target)
        await store.ensure_collection(target.db_name, collection, self.config.collection_map(collection))
        return store

    async def load_payload(self, blob: BlobRef) -> dict[str, Any]:
        data = await self.pool.object_store(blob.store_key).get(blob.bucket, blob.key)
        return decode_payload(data)

    async def _head_payload(self, head: ItemHead) -> dict[str, Any]:
        if head.shadow is not None and (head.shadow_expires_at or 0) > _now_ms():
            return copy.deepcopy(head.shadow)
        return await self.load_payload(head.blob)

    def _needs_previous(self, op: WriteOp) -> bool:
        return (
            self.counters is not None
            and _COUNTER_EVENTS.get(op) == "UPDATE"
            and any("UPDATE" in rule.on for rule in self.counters.rules)
        )

    async def _write(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        expected_ov: int | None,
        payload: dict[str, Any],
        op: WriteOp,
        actor: str,
        reason: str,
        function_id: str | None = None,
        require_live: bool = True,
        previous: dict[str, Any] | None = None,
    ) -> CommitResult:
        cmap = self.config.collection_map(collection)
        connection = self.pool.object_connection(target.object_store_key)
        new_ov = 0 if expected_ov is None else expected_ov + 1

        stored = copy.deepcopy(payload)
        carried = await self._carried_blobs(target, collection, item_id, stored, cmap)
        uploads = []
        for path, data in extract_content(stored, cmap.base64_props).items():
            prop = cmap.base64_props[path]
            content_blob = BlobRef(
                store_key=connection.key,
                bucket=connection.bucket_for("content"),
                key=blob_key(collection, item_id, new_ov, suffix=f"{path}.bin"),
                content_type=prop.content_type,
            )
            uploads.append(BlobUpload(content_blob, data))
            text_blob = None
            if prop.preferred_text:
                try:
                    text = data.decode(prop.text_charset)
                except (UnicodeDecodeError, LookupError):
                    logger.debug(f"No text rendition for {collection}/{item_id}.{path}")
                else:
                    text_blob = BlobRef(
                        store_key=connection.key,
                        bucket=connection.bucket_for("content"),
                        key=blob_key(collection, item_id, new_ov, suffix=f"{path}.txt"),
                        content_type="text/plain; charset=utf-8",
                    )
                    uploads.append(BlobUpload(text_blob, text.encode("utf-8")))
            replace_field(stored, path, content_ref(content_blob, len(data), text_blob))

        payload_blob = BlobRef(
            store_key=connection.key,
            bucket=connection.bucket_for("versions"),
            key=blob_key(collection, item_id, new_ov),
        )
        uploads.append(BlobUpload(payload_blob, encode_payload(stored)))

        extra_blobs = []
        for content_blob, text_blob in content_blobs(stored, cmap.base64_props).values():
            extra_blobs.append(content_blob)
            if text_blob is not None:
                extra_blobs.append(text_blob)

        shadow, shadow_expires_at = self._shadow(stored)
        write = VersionWrite(
            collection=collection,
            item_id=item_id,
            expected_ov=expected_ov,
            blob=payload_blob,
            meta_indexed=project_indexed(stored, cmap),
            op=op,
            actor=actor,
            reason=reason,
            created_at=_now_ms(),
            function_id=function_id,
            require_live=require_live,
            extra_blobs=tuple(extra_blobs),
            carried_blobs=carried,
            shadow=shadow,
            shadow_expires_at=shadow_expires_at,
        )
        result = await self.optimizer.submit(target, write, uploads)
        logger.debug(
            "Committed version",
            extra={
                "db_name": target.db_name,
                "collection": collection,
                "item_id": item_id,
                "ov": result.ov,
                "op": op.value,
            },
        )
        await self._count(op, target, previous, stored, result.created_at)
        return result

    async def _carried_blobs(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        payload: dict[str, Any],
        cmap: CollectionMap,
    ) -> tuple[BlobRef, ...]:
        """Content references the payload takes over from earlier versions of the item.

        A reference is accepted only if a retained version of the same item
        already references the blob; the metadata transaction checks again.

        Raises:
            ValidationError: If a reference points at content the item does not own
        """
        refs = content_blobs(payload, cmap.base64_props)
        if not refs:
            return ()
        owned = await self.pool.metadata_store(target).item_blob_keys(target.db_name, collection, item_id)
        carried = []
        for path, (content_blob, text_blob) in refs.items():
            for blob in (content_blob, text_blob):
                if blob is None:
                    continue
                if (blob.store_key, blob.bucket, blob.key) not in owned:
                    raise ValidationError(
                        f"Field '{path}' references content that does not belong to {item_id}",
                        field_name=path,
                    )
                carried.append(blob)
        return tuple(carried)

    def _shadow(self, stored: dict[str, Any]) -> tuple[dict[str, Any] | None, int | None]:
        dev_shadow = self.config.dev_shadow
        if not dev_shadow.enabled:
            return None, None
        if self.optimizer.batching and self.config.write_optimization.allow_shadow_skip:
            return None, None
        return stored, _now_ms() + dev_shadow.ttl_hours * 3600 * 1000

    async def _count(
        self,
        op: WriteOp,
        target: RouteTarget,
        previous: dict[str, Any] | None,
        current: dict[str, Any],
        at: int,
    ) -> None:
        event = _COUNTER_EVENTS.get(op)
        if self.counters is None or event is None:
            return
        deltas = self.counters.deltas_for(event, target, previous, current, at)
        await self.optimizer.record_counter_deltas(deltas)

    async def create(
        self,
        target: RouteTarget,
        collection: str,
        payload: dict[str, Any],
        actor: str,
        reason: str = "",
    ) -> WriteResult:
        """Create an item at version 0 under a new id.

        Raises:
            ValidationError: If the payload misses required indexed fields
        """
        validate_payload(payload, self.config.collection_map(collection))
        await self.store_for(target, collection)
        item_id = uuid.uuid4().hex
        result = await self._write(target, collection, item_id, None, payload, WriteOp.CREATE, actor, reason)
        return WriteResult(id=item_id, ov=result.ov, cv=result.cv, at=result.created_at)

    async def update(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        payload: dict[str, Any],
        expected_ov: int,
        actor: str,
        reason: str = "",
    ) -> WriteResult:
        """Replace an item's payload if its current ov equals ``expected_ov``.

        Raises:
            ConflictError: If the item's ov moved (never retried)
            NotFoundError: If the item does not exist or is deleted
        """
        validate_payload(payload, self.config.collection_map(collection))
        if isinstance(expected_ov, bool) or not isinstance(expected_ov, int) or expected_ov < 0:
            raise ValidationError(f"expected_ov must be a non-negative integer, got {expected_ov!r}", field_name="expected_ov")

        store = await self.store_for(target, collection)
        previous = None
        if self._needs_previous(WriteOp.UPDATE):
            head = await store.get_head(target.db_name, collection, item_id)
            if head is not None and head.ov == expected_ov:
                previous = await self._head_payload(head)

        result = await self._write(
            target, collection, item_id, expected_ov, payload, WriteOp.UPDATE, actor, reason,
            previous=previous,
        )
        return WriteResult(id=item_id, ov=result.ov, cv=result.cv, at=result.created_at)

    async def enrich(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        patch: dict[str, Any],
        actor: str,
        reason: str = "",
        function_id: str | None = None,
    ) -> WriteResult:
        """Deep-merge ``patch`` into the latest payload without a caller-supplied ov.

        Re-reads and retries on conflict up to ``versioning.enrich_max_retries``
        attempts.

        Raises:
            ConflictError: If every attempt lost a race
            NotFoundError: If the item does not exist or is deleted
        """
        if not isinstance(patch, dict):
            raise ValidationError("Enrich patch must be a JSON object", field_name="patch")
        cmap = self.config.collection_map(collection)
        store = await self.store_for(target, collection)
        settings = self.config.versioning

        last_conflict: ConflictError | None = None
        for attempt in range(settings.enrich_max_retries):
            head = await store.get_head(target.db_name, collection, item_id)
            if head is None or head.is_deleted:
                raise NotFoundError(f"Item not found: {item_id}", "item", item_id)
            current = await self._head_payload(head)
            merged = deep_merge(current, patch)
            validate_payload(merged, cmap)
            try:
                result = await self._write(
                    target, collection, item_id, head.ov, merged, WriteOp.ENRICH, actor, reason,
                    function_id=function_id, previous=current,
                )
                return WriteResult(id=item_id, ov=result.ov, cv=result.cv, at=result.created_at)
            except ConflictError as e:
                last_conflict = e
                logger.debug(
                    f"Enrich conflict on {item_id}, attempt {attempt + 1}",
                    extra={"item_id": item_id, "expected_ov": head.ov},
                )
                await asyncio.sleep(settings.enrich_retry_delay_ms * (attempt + 1) / 1000.0)

        raise ConflictError(
            f"Enrich of {item_id} gave up after {settings.enrich_max_retries} conflicting attempts",
            item_id=item_id,
            expected_ov=last_conflict.expected_ov if last_conflict else None,
            actual_ov=last_conflict.actual_ov if last_conflict else None,
        )

    async def delete(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        expected_ov: int,
        actor: str,
        reason: str = "",
    ) -> WriteResult:
        """Append a tombstone version. Prior versions stay readable.

        Raises:
            ConflictError: If the item's ov moved
            NotFoundError: If the item does not exist or is already deleted
        """
        store = await self.store_for(target, collection)
        head = await store.get_head(target.db_name, collection, item_id)
        if head is None or head.is_deleted:
            raise NotFoundError(f"Item not found: {item_id}", "item", item_id)
        if head.ov != expected_ov:
            raise ConflictError(
                f"Version conflict on {item_id}: expected ov={expected_ov}, current ov={head.ov}",
                item_id=item_id,
                expected_ov=expected_ov,
                actual_ov=head.ov,
            )

        write = VersionWrite(
            collection=collection,
            item_id=item_id,
            expected_ov=expected_ov,
            blob=head.blob,
            meta_indexed=head.meta_indexed,
            op=WriteOp.DELETE,
            actor=actor,
            reason=reason,
            created_at=_now_ms(),
            deleted=True,
            inherit_blobs=True,
        )
        result = await self.optimizer.submit(target, write, [])
        logger.info(
            "Deleted item",
            extra={"db_name": target.db_name, "collection": collection, "item_id": item_id, "ov": result.ov},
        )
        return WriteResult(id=item_id, ov=result.ov, cv=result.cv, at=result.created_at)

    async def restore(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        ov: int,
        actor: str,
        reason: str = "",
    ) -> WriteResult:
        """Append a copy of version ``ov`` as the new current version.

        Restoring also un-deletes a tombstoned item.

        Raises:
            NotFoundError: If the item or the target version does not exist
        """
        store = await self.store_for(target, collection)
        for attempt in range(self.config.versioning.enrich_max_retries):
            head = await store.get_head(target.db_name, collection, item_id)
            if head is None:
                raise NotFoundError(f"Item not found: {item_id}", "item", item_id)
            record = await store.get_version(target.db_name, collection, item_id, ov)
            if record is None:
                raise NotFoundError(f"Version {ov} of {item_id} not found", "version", f"{item_id}@{ov}")

            payload = await self.load_payload(record.blob)
            previous = await self._head_payload(head) if self._needs_previous(WriteOp.RESTORE) else None
            try:
                result = await self._write(
                    target, collection, item_id, head.ov, payload, WriteOp.RESTORE, actor,
                    reason or f"restore to v{ov}", require_live=False, previous=previous,
                )
            except ConflictError:
                if attempt + 1 >= self.config.versioning.enrich_max_retries:
                    raise
                continue
            logger.info(
                "Restored item",
                extra={"item_id": item_id, "from_ov": ov, "ov": result.ov, "collection": collection},
            )
            return WriteResult(id=item_id, ov=result.ov, cv=result.cv, at=result.created_at)
        raise ConflictError(f"Restore of {item_id} did not converge", item_id=item_id)

    async def view_for_head(
        self,
        target: RouteTarget,
        collection: str,
        head: ItemHead,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
    ) -> ItemView:
        payload = await self._head_payload(head)
        meta = ItemMeta(
            ov=head.ov,
            cv=head.cv,
            at=head.updated_at,
            meta_indexed=head.meta_indexed,
            deleted_at=head.deleted_at,
            created_at=head.created_at,
        )
        return await self._view(collection, head.item_id, payload, meta, presign, ttl_seconds, projection)

    async def _view(
        self,
        collection: str,
        item_id: str,
        payload: dict[str, Any],
        meta: ItemMeta,
        presign: bool,
        ttl_seconds: int | None,
        projection: list[str] | dict[str, Any] | None,
    ) -> ItemView:
        cmap: CollectionMap = self.config.collection_map(collection)
        grants = await self.presign.grants_for(payload, cmap.base64_props, ttl_seconds) if presign else {}
        return ItemView(
            id=item_id,
            item=apply_projection(payload, projection),
            meta=meta,
            presigned=grants,
        )

    async def _version_view(
        self,
        collection: str,
        record: VersionRecord,
        presign: bool,
        ttl_seconds: int | None,
        projection: list[str] | dict[str, Any] | None,
    ) -> ItemView:
        payload = await self.load_payload(record.blob)
        meta = ItemMeta(
            ov=record.ov,
            cv=record.cv,
            at=record.created_at,
            meta_indexed=record.meta_indexed,
            deleted_at=record.deleted_at,
        )
        return await self._view(collection, record.item_id, payload, meta, presign, ttl_seconds, projection)

    async def get_latest(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
    ) -> ItemView | None:
        """Current version, or None if the item was never created.

        A deleted item is returned with ``meta.deleted_at`` set and its last payload.
        """
        if presign:
            self.presign.resolve_ttl(ttl_seconds)
        store = await self.store_for(target, collection)
        head = await store.get_head(target.db_name, collection, item_id)
        if head is None:
            return None
        return await self.view_for_head(target, collection, head, presign, ttl_seconds, projection)

    async def get_version(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        ov: int,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
    ) -> ItemView | None:
        """A specific version, or None if it was never written or has been pruned."""
        if isinstance(ov, bool) or not isinstance(ov, int):
            raise ValidationError(f"ov must be an integer, got {ov!r}", field_name="ov")
        if ov < 0:
            return None
        store = await self.store_for(target, collection)
        record = await store.get_version(target.db_name, collection, item_id, ov)
        if record is None:
            return None
        return await self._version_view(collection, record, presign, ttl_seconds, projection)

    async def get_as_of(
        self,
        target: RouteTarget,
        collection: str,
        item_id: str,
        timestamp: datetime | str | int,
        presign: bool = False,
        ttl_seconds: int | None = None,
        projection: list[str] | dict[str, Any] | None = None,
    ) -> ItemView | None:
        """Latest version written at or before ``timestamp``."""
        ts_ms = to_timestamp_ms(timestamp)
        store = await self.store_for(target, collection)
        record = await store.get_version_as_of(target.db_name, collection, item_id, ts_ms)
        if record is None:
            return None
        return await self._version_view(collection, record, presign, ttl_seconds, projection)

    async def history(self, target: RouteTarget, collection: str, item_id: str) -> list[VersionInfo]:
        """Every retained version of an item, oldest first."""
        store = await self.store_for(target, collection)
        return [
            VersionInfo(
                ov=record.ov,
                cv=record.cv,
                at=record.created_at,
                op=record.op,
                actor=record.actor,
                reason=record.reason,
                function_id=record.function_id,
                deleted_at=record.deleted_at,
            )
            for record in await store.list_versions(target.db_name, collection, item_id)
        ]
