"""
Storage backends for Chronos.

- base: MetadataStore and ObjectStore protocols and shared record types
- sqlite_metadata: SQLite metadata store (one file per database name)
- s3_objects / local_objects / memory_objects: object store backends
- pool: connection pools owned by the engine
"""

from .base import (
    BlobRef,
    CommitResult,
    ItemHead,
    MetadataStore,
    ObjectStore,
    PruneResult,
    QueryPage,
    VersionRecord,
    VersionWrite,
    WriteOp,
)
from .local_objects import LocalObjectStore
from .memory_objects import MemoryObjectStore
from .pool import ConnectionPool, create_object_store
from .s3_objects import S3ObjectStore
from .signing import sign_url, verify_signed_url
from .sqlite_metadata import SqliteMetadataStore

__all__ = [
    "BlobRef",
    "CommitResult",
    "ConnectionPool",
    "ItemHead",
    "LocalObjectStore",
    "MemoryObjectStore",
    "MetadataStore",
    "ObjectStore",
    "PruneResult",
    "QueryPage",
    "S3ObjectStore",
    "SqliteMetadataStore",
    "VersionRecord",
    "VersionWrite",
    "WriteOp",
    "create_object_store",
    "sign_url",
    "verify_signed_url",
]
