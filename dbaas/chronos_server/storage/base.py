"""
Base protocols and types for Chronos storage backends.

Two kinds of backend sit behind the engine:

- MetadataStore: per-database document store holding item heads, the
  append-only version chain, collection versions and indexed projections.
  It provides the one strongly consistent primitive of the system: a
  compare-and-swap on an item's ``ov``.
- ObjectStore: S3-compatible blob storage for payloads and externalized content.

Invariants:
    - A version row is never updated; retention may delete it
    - Version numbers per item are gapless and start at 0
    - commit_batch() reports an outcome for every member
    - Backends raise StorageError for transient I/O failures, never raw driver errors

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods with default behaviour where possible
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..config import CollectionMap
from ..errors import ChronosError


class WriteOp(Enum):
    """Operation that produced a version."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    ENRICH = "ENRICH"
    DELETE = "DELETE"
    RESTORE = "RESTORE"


@dataclass(frozen=True)
class BlobRef:
    """Location of a blob in an object store.

    Attributes:
        store_key: Object store connection key
        bucket: Bucket name
        key: Object key
        content_type: MIME type
    """

    store_key: str
    bucket: str
    key: str
    content_type: str = "application/json"

    def to_dict(self) -> dict[str, str]:
        return {
            "store_key": self.store_key,
            "bucket": self.bucket,
            "key": self.key,
            "content_type": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> BlobRef:
        return cls(
            store_key=data["store_key"],
            bucket=data["bucket"],
            key=data["key"],
            content_type=data.get("content_type", "application/json"),
        )


@dataclass
class ItemHead:
    """Current-version pointer and indexed projection of an item."""

    collection: str
    item_id: str
    ov: int
    cv: int
    created_at: int
    updated_at: int
    deleted_at: int | None
    meta_indexed: dict[str, Any]
    blob: BlobRef
    shadow: dict[str, Any] | None = None
    shadow_expires_at: int | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class VersionRecord:
    """An immutable version of an item."""

    collection: str
    item_id: str
    ov: int
    cv: int
    blob: BlobRef
    meta_indexed: dict[str, Any]
    op: str
    actor: str
    reason: str
    function_id: str | None
    created_at: int
    deleted_at: int | None = None


@dataclass
class VersionWrite:
    """A conditional write appending one version.

    ``expected_ov=None`` means the item must not exist yet (create).
    Otherwise the write succeeds only while the item's current ``ov`` equals
    ``expected_ov``, and the new version is ``expected_ov + 1``.

    Attributes:
        collection: Collection name
        item_id: Item identifier
        expected_ov: Required current version, or None for create
        blob: Payload blob reference
        meta_indexed: Indexed projection of the payload
        op: Operation kind
        actor: Actor performing the write
        reason: Free-form reason
        created_at: Requested timestamp (clamped to be monotonic per item)
        function_id: Enrichment function identifier
        deleted: Whether this version is a tombstone
        require_live: Reject the write if the item is deleted
        extra_blobs: Other blobs referenced by the payload (externalized content)
        carried_blobs: Subset of extra_blobs taken over from earlier versions; each
            must already be referenced by a version of the same item
        inherit_blobs: Also reference every blob of the replaced version (tombstones)
        shadow: Full payload snapshot to keep on the head (None clears it)
        shadow_expires_at: Shadow expiry (Unix ms)
    """

    collection: str
    item_id: str
    expected_ov: int | None
    blob: BlobRef
    meta_indexed: dict[str, Any]
    op: WriteOp
    actor: str
    reason: str
    created_at: int
    function_id: str | None = None
    deleted: bool = False
    require_live: bool = True
    extra_blobs: tuple[BlobRef, ...] = ()
    carried_blobs: tuple[BlobRef, ...] = ()
    inherit_blobs: bool = False
    shadow: dict[str, Any] | None = None
    shadow_expires_at: int | None = None

    @property
    def new_ov(self) -> int:
        return 0 if self.expected_ov is None else self.expected_ov + 1


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a committed version write."""

    item_id: str
    ov: int
    cv: int
    created_at: int
    deleted_at: int | None = None


@dataclass
class QueryPage:
    """Heads returned by an indexed query plus their sort values."""

    heads: list[ItemHead] = field(default_factory=list)
    sort_values: list[Any] = field(default_factory=list)


@dataclass
class PruneResult:
    """Outcome of a retention pass over one collection."""

    versions_deleted: int = 0
    items_touched: int = 0
    orphaned_blobs: list[BlobRef] = field(default_factory=list)


BatchOutcome = CommitResult | ChronosError


@runtime_checkable
class MetadataStore(Protocol):
    """Protocol for metadata store backends.

    Every method takes the logical ``db_name``; a store serves all databases
    routed to its connection.
    """

    @abstractmethod
    async def ensure_collection(
        self, db_name: str, collection: str, collection_map: CollectionMap
    ) -> None:
        """Create schema and secondary indexes for a collection."""
        ...

    @abstractmethod
    async def commit(self, db_name: str, write: VersionWrite) -> CommitResult:
        """Apply one conditional write.

        Raises:
            ConflictError: If the item's ov does not match (or it already exists)
            NotFoundError: If the item does not exist or is deleted
            StorageError: On I/O failure
        """
        ...

    @abstractmethod
    async def commit_batch(self, db_name: str, writes: list[VersionWrite]) -> list[BatchOutcome]:
        """Apply many conditional writes in one transaction.

        Each member succeeds or fails individually.

        Raises:
            StorageError: If the transaction itself fails (no member applied)
        """
        ...

    @abstractmethod
    async def get_head(self, db_name: str, collection: str, item_id: str) -> ItemHead | None:
        ...

    @abstractmethod
    async def get_version(
        self, db_name: str, collection: str, item_id: str, ov: int
    ) -> VersionRecord | None:
        ...

    @abstractmethod
    async def get_version_as_of(
        self, db_name: str, collection: str, item_id: str, ts_ms: int
    ) -> VersionRecord | None:
        ...

    @abstractmethod
    async def list_versions(self, db_name: str, collection: str, item_id: str) -> list[VersionRecord]:
        ...

    @abstractmethod
    async def query(
        self,
        db_name: str,
        collection: str,
        predicates: list[Any],
        sort: Any,
        limit: int,
        cursor: Any = None,
        after_id: str | None = None,
        include_deleted: bool = False,
    ) -> QueryPage:
        """Indexed, cursor-paginated listing of item heads."""
        ...

    @abstractmethod
    async def prune_versions(
        self,
        db_name: str,
        collection: str,
        older_than_ms: int | None,
        max_per_item: int | None,
    ) -> PruneResult:
        """Delete non-current versions violating retention; return orphaned blobs."""
        ...

    @abstractmethod
    async def clear_expired_shadows(self, db_name: str, now_ms: int) -> int:
        ...

    @abstractmethod
    async def collections(self, db_name: str) -> list[str]:
        """Collections that have received writes in a database."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for S3-compatible object store backends."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        """Store a blob.

        Raises:
            StorageError: On I/O failure
        """
        ...

    @abstractmethod
    async def get(self, bucket: str, key: str) -> bytes:
        """Fetch a blob.

        Raises:
            NotFoundError: If the blob does not exist
            StorageError: On I/O failure
        """
        ...

    @abstractmethod
    async def head(self, bucket: str, key: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None:
        ...

    @abstractmethod
    async def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        """Time-limited GET URL for a blob."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...
