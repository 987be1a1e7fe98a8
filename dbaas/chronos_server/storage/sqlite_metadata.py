"""
SQLite metadata store for Chronos.

One SQLite file per logical database name under the connection's data
directory. Each file holds:

- Item heads (current version pointer and indexed projection)
- The append-only version chain
- Blob references per version (for reference-checked garbage collection)
- Collection versions

Invariants:
    - One SQLite file per database name
    - Every write runs in a BEGIN IMMEDIATE transaction
    - The head advances only through ``UPDATE ... WHERE ov = ?`` (compare-and-swap)
    - Version rows are inserted, never updated
    - Retention never deletes the version the head points at

How to change safely:
    - Schema migrations must be backward compatible
    - Keep JSON path expressions in queries identical to the index definitions,
      otherwise SQLite stops using the expression indexes
    - Use transactions for all write operations

Table schema:
    items:
        - collection TEXT, item_id TEXT
        - ov INTEGER, cv INTEGER
        - created_at, updated_at INTEGER (Unix ms), deleted_at INTEGER NULL
        - meta_indexed_json TEXT
        - store_key, bucket, blob_key, content_type TEXT (current payload blob)
        - shadow_json TEXT NULL, shadow_expires_at INTEGER NULL
        - PRIMARY KEY (collection, item_id)

    versions:
        - collection, item_id, ov
        - cv, store_key, bucket, blob_key, content_type, meta_indexed_json
        - op, actor, reason, function_id, created_at, deleted_at
        - PRIMARY KEY (collection, item_id, ov)

    version_blobs:
        - collection, item_id, ov, store_key, bucket, blob_key
        - INDEX on (store_key, bucket, blob_key)

    collections:
        - collection TEXT PRIMARY KEY, cv INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..config import CollectionMap
from ..errors import ConflictError, NotFoundError, StorageError, ValidationError
from ..index.filters import Cursor, Predicate, SortSpec
from .base import (
    BatchOutcome,
    BlobRef,
    CommitResult,
    ItemHead,
    PruneResult,
    QueryPage,
    VersionRecord,
    VersionWrite,
)

logger = logging.getLogger(__name__)

_SAFE_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def _json_path(field_name: str) -> str:
    if not _SAFE_FIELD.match(field_name):
        raise ValidationError(f"Invalid field name: {field_name!r}", field_name=field_name)
    return f"'$.\"{field_name}\"'"


def _extract_expr(field_name: str) -> str:
    """Expression used both in index definitions and in queries."""
    return f"json_extract(meta_indexed_json, {_json_path(field_name)})"


def _eq_sql(field_name: str, value: Any) -> tuple[str, list[Any]]:
    path = _json_path(field_name)
    if value is None:
        return (
            f"(json_type(items.meta_indexed_json, {path}) IS NULL"
            f" OR EXISTS (SELECT 1 FROM json_each(items.meta_indexed_json, {path}) AS je"
            " WHERE je.type = 'null'))",
            [],
        )
    if isinstance(value, bool):
        return (
            f"EXISTS (SELECT 1 FROM json_each(items.meta_indexed_json, {path}) AS je"
            f" WHERE je.type = '{'true' if value else 'false'}')",
            [],
        )
    type_check = "je.type = 'text'" if isinstance(value, str) else "je.type IN ('integer', 'real')"
    return (
        f"EXISTS (SELECT 1 FROM json_each(items.meta_indexed_json, {path}) AS je"
        f" WHERE {type_check} AND je.value = ?)",
        [value],
    )


def _predicate_sql(predicate: Predicate) -> tuple[str, list[Any]]:
    """Compile one predicate over the indexed projection.

    json_each() yields one row for a scalar and one row per element for an
    array, which gives element-wise matching for array fields.
    """
    op = predicate.op
    path = _json_path(predicate.field)
    if op == "eq":
        return _eq_sql(predicate.field, predicate.value)
    if op == "ne":
        sql, params = _eq_sql(predicate.field, predicate.value)
        return f"NOT {sql}", params
    if op in ("gt", "gte", "lt", "lte"):
        symbol = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}[op]
        type_check = "je.type = 'text'" if isinstance(predicate.value, str) else "je.type IN ('integer', 'real')"
        return (
            f"EXISTS (SELECT 1 FROM json_each(items.meta_indexed_json, {path}) AS je"
            f" WHERE {type_check} AND je.value {symbol} ?)",
            [predicate.value],
        )
    if op in ("in", "nin"):
        if not predicate.value:
            return ("0" if op == "in" else "1"), []
        parts, params = [], []
        for value in predicate.value:
            sql, p = _eq_sql(predicate.field, value)
            parts.append(sql)
            params.extend(p)
        joined = "(" + " OR ".join(parts) + ")"
        return (joined if op == "in" else f"NOT {joined}"), params
    if op == "exists":
        check = "IS NOT NULL" if predicate.value else "IS NULL"
        return f"json_type(items.meta_indexed_json, {path}) {check}", []
    raise ValidationError(f"Unsupported operator: ${op}", field_name=predicate.field)


def _cursor_sql(sort: SortSpec, sort_expr: str, cursor: Cursor) -> tuple[str, list[Any]]:
    """Rows strictly after the cursor in (sort value, item_id) order.

    NULLs sort first ascending and last descending.
    """
    if sort.by_id:
        return ("item_id > ?" if sort.direction == 1 else "item_id < ?"), [cursor.item_id]
    if sort.direction == 1:
        if cursor.value is None:
            return (
                f"(({sort_expr} IS NULL AND item_id > ?) OR {sort_expr} IS NOT NULL)",
                [cursor.item_id],
            )
        return (
            f"({sort_expr} > ? OR ({sort_expr} = ? AND item_id > ?))",
            [cursor.value, cursor.value, cursor.item_id],
        )
    if cursor.value is None:
        return f"({sort_expr} IS NULL AND item_id > ?)", [cursor.item_id]
    return (
        f"({sort_expr} < ? OR ({sort_expr} = ? AND item_id > ?) OR {sort_expr} IS NULL)",
        [cursor.value, cursor.value, cursor.item_id],
    )


def _row_blob(row: sqlite3.Row) -> BlobRef:
    return BlobRef(
        store_key=row["store_key"],
        bucket=row["bucket"],
        key=row["blob_key"],
        content_type=row["content_type"],
    )


def _row_to_head(row: sqlite3.Row) -> ItemHead:
    return ItemHead(
        collection=row["collection"],
        item_id=row["item_id"],
        ov=row["ov"],
        cv=row["cv"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row["deleted_at"],
        meta_indexed=json.loads(row["meta_indexed_json"]),
        blob=_row_blob(row),
        shadow=json.loads(row["shadow_json"]) if row["shadow_json"] else None,
        shadow_expires_at=row["shadow_expires_at"],
    )


def _row_to_version(row: sqlite3.Row) -> VersionRecord:
    return VersionRecord(
        collection=row["collection"],
        item_id=row["item_id"],
        ov=row["ov"],
        cv=row["cv"],
        blob=_row_blob(row),
        meta_indexed=json.loads(row["meta_indexed_json"]),
        op=row["op"],
        actor=row["actor"],
        reason=row["reason"],
        function_id=row["function_id"],
        created_at=row["created_at"],
        deleted_at=row["deleted_at"],
    )


class SqliteMetadataStore:
    """Per-database SQLite store for item heads and version chains.

    Thread safety:
        Each database connection is created per-operation.
        SQLite serializes writers; BEGIN IMMEDIATE takes the write lock up front
        so compare-and-swap checks and updates see the same state.

    Example:
        >>> store = SqliteMetadataStore("/var/lib/chronos", key="meta-0")
        >>> await store.ensure_collection("runtime_generic", "users", cmap)
        >>> head = await store.get_head("runtime_generic", "users", item_id)
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        key: str = "sqlite",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the metadata store.

        Args:
            data_dir: Directory for SQLite database files
            key: Connection key (for logs and errors)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.key = key
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._schema_ready: set[str] = set()
        self._indexes_ready: set[tuple[str, str, str]] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    def get_db_path(self, db_name: str) -> Path:
        """Get database file path for a database name."""
        # Sanitize db_name to prevent path traversal
        safe_name = "".join(c for c in db_name if c.isalnum() or c in "-_")
        return self.data_dir / f"{safe_name}.db"

    @contextmanager
    def _get_connection(self, db_name: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use.

        Raises:
            StorageError: On any SQLite or filesystem failure
        """
        if self._closed:
            raise StorageError("Metadata store is closed", backend=self.key, operation="connect")

        db_path = self.get_db_path(db_name)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (sqlite3.Error, OSError) as e:
            raise StorageError(
                f"Cannot open metadata database {db_name}: {e}",
                backend=self.key,
                operation="connect",
            ) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if db_name not in self._schema_ready:
                self._create_schema(conn)
                self._schema_ready.add(db_name)
            yield conn
        except sqlite3.Error as e:
            raise StorageError(
                f"SQLite error on {db_name}: {e}",
                backend=self.key,
                operation="execute",
            ) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Item heads
            CREATE TABLE IF NOT EXISTS items (
                collection TEXT NOT NULL,
                item_id TEXT NOT NULL,
                ov INTEGER NOT NULL,
                cv INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted_at INTEGER,
                meta_indexed_json TEXT NOT NULL DEFAULT '{}',
                store_key TEXT NOT NULL,
                bucket TEXT NOT NULL,
                blob_key TEXT NOT NULL,
                content_type TEXT NOT NULL,
                shadow_json TEXT,
                shadow_expires_at INTEGER,
                PRIMARY KEY (collection, item_id)
            );

            CREATE INDEX IF NOT EXISTS idx_items_updated ON items(collection, updated_at DESC);
            CREATE INDEX IF NOT EXISTS idx_items_shadow ON items(shadow_expires_at)
                WHERE shadow_expires_at IS NOT NULL;

            -- Append-only version chain
            CREATE TABLE IF NOT EXISTS versions (
                collection TEXT NOT NULL,
                item_id TEXT NOT NULL,
                ov INTEGER NOT NULL,
                cv INTEGER NOT NULL,
                store_key TEXT NOT NULL,
                bucket TEXT NOT NULL,
                blob_key TEXT NOT NULL,
                content_type TEXT NOT NULL,
                meta_indexed_json TEXT NOT NULL DEFAULT '{}',
                op TEXT NOT NULL,
                actor TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                function_id TEXT,
                created_at INTEGER NOT NULL,
                deleted_at INTEGER,
                PRIMARY KEY (collection, item_id, ov)
            );

            CREATE INDEX IF NOT EXISTS idx_versions_created
                ON versions(collection, item_id, created_at);

            -- Every blob a version references
            CREATE TABLE IF NOT EXISTS version_blobs (
                collection TEXT NOT NULL,
                item_id TEXT NOT NULL,
                ov INTEGER NOT NULL,
                store_key TEXT NOT NULL,
                bucket TEXT NOT NULL,
                blob_key TEXT NOT NULL,
                PRIMARY KEY (collection, item_id, ov, store_key, bucket, blob_key)
            );

            CREATE INDEX IF NOT EXISTS idx_version_blobs_ref
                ON version_blobs(store_key, bucket, blob_key);

            -- Collection versions
            CREATE TABLE IF NOT EXISTS collections (
                collection TEXT PRIMARY KEY,
                cv INTEGER NOT NULL DEFAULT 0
            );

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def ensure_collection(
        self, db_name: str, collection: str, collection_map: CollectionMap
    ) -> None:
        """Create expression indexes for a collection's indexed props."""
        pending = [
            prop
            for prop in collection_map.indexed_props
            if (db_name, collection, prop) not in self._indexes_ready
        ]
        if not pending and db_name in self._schema_ready:
            return

        async with self._lock:
            with self._get_connection(db_name) as conn:
                for prop in pending:
                    safe = "".join(c if c.isalnum() else "_" for c in f"{collection}_{prop}")
                    conn.execute(
                        f'CREATE INDEX IF NOT EXISTS "idx_meta_{safe}" '
                        f"ON items(collection, {_extract_expr(prop)})"
                    )
                    self._indexes_ready.add((db_name, collection, prop))
        if pending:
            logger.info(
                "Ensured collection indexes",
                extra={"db_name": db_name, "collection": collection, "indexed_props": pending},
            )

    def _apply(self, conn: sqlite3.Connection, write: VersionWrite) -> CommitResult:
        """Apply one conditional write inside an open transaction."""
        row = conn.execute(
            "SELECT ov, updated_at, deleted_at FROM items WHERE collection = ? AND item_id = ?",
            (write.collection, write.item_id),
        ).fetchone()

        if write.expected_ov is None:
            if row is not None:
                raise ConflictError(
                    f"Item already exists: {write.item_id}",
                    item_id=write.item_id,
                    actual_ov=row["ov"],
                )
        else:
            if row is None:
                raise NotFoundError(f"Item not found: {write.item_id}", "item", write.item_id)
            if row["ov"] != write.expected_ov:
                raise ConflictError(
                    f"Version conflict on {write.item_id}: expected ov={write.expected_ov}, "
                    f"current ov={row['ov']}",
                    item_id=write.item_id,
                    expected_ov=write.expected_ov,
                    actual_ov=row["ov"],
                )
            if write.require_live and row["deleted_at"] is not None:
                raise NotFoundError(f"Item is deleted: {write.item_id}", "item", write.item_id)

        for ref in write.carried_blobs:
            owned = conn.execute(
                """
                SELECT 1 FROM version_blobs
                WHERE collection = ? AND item_id = ? AND store_key = ? AND bucket = ? AND blob_key = ?
                LIMIT 1
                """,
                (write.collection, write.item_id, ref.store_key, ref.bucket, ref.key),
            ).fetchone()
            if owned is None:
                raise ValidationError(
                    f"Content {ref.bucket}/{ref.key} is not referenced by {write.item_id}",
                    field_name="$ref",
                )

        # Clock regressions are clamped so created_at never goes backwards
        ts = write.created_at if row is None else max(write.created_at, row["updated_at"])
        deleted_at = ts if write.deleted else None
        new_ov = write.new_ov

        conn.execute(
            """
            INSERT INTO collections (collection, cv) VALUES (?, 1)
            ON CONFLICT(collection) DO UPDATE SET cv = cv + 1
            """,
            (write.collection,),
        )
        cv = conn.execute(
            "SELECT cv FROM collections WHERE collection = ?", (write.collection,)
        ).fetchone()["cv"]

        meta_json = json.dumps(write.meta_indexed, sort_keys=True)
        shadow_json = json.dumps(write.shadow) if write.shadow is not None else None
        blob = write.blob

        if row is None:
            conn.execute(
                """
                INSERT INTO items (collection, item_id, ov, cv, created_at, updated_at,
                                   deleted_at, meta_indexed_json, store_key, bucket,
                                   blob_key, content_type, shadow_json, shadow_expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    write.collection,
                    write.item_id,
                    new_ov,
                    cv,
                    ts,
                    ts,
                    deleted_at,
                    meta_json,
                    blob.store_key,
                    blob.bucket,
                    blob.key,
                    blob.content_type,
                    shadow_json,
                    write.shadow_expires_at if shadow_json else None,
                ),
            )
        else:
            cursor = conn.execute(
                """
                UPDATE items
                SET ov = ?, cv = ?, updated_at = ?, deleted_at = ?, meta_indexed_json = ?,
                    store_key = ?, bucket = ?, blob_key = ?, content_type = ?,
                    shadow_json = ?, shadow_expires_at = ?
                WHERE collection = ? AND item_id = ? AND ov = ?
                """,
                (
                    new_ov,
                    cv,
                    ts,
                    deleted_at,
                    meta_json,
                    blob.store_key,
                    blob.bucket,
                    blob.key,
                    blob.content_type,
                    shadow_json,
                    write.shadow_expires_at if shadow_json else None,
                    write.collection,
                    write.item_id,
                    write.expected_ov,
                ),
            )
            if cursor.rowcount != 1:
                raise ConflictError(
                    f"Version conflict on {write.item_id}",
                    item_id=write.item_id,
                    expected_ov=write.expected_ov,
                )

        conn.execute(
            """
            INSERT INTO versions (collection, item_id, ov, cv, store_key, bucket, blob_key,
                                  content_type, meta_indexed_json, op, actor, reason,
                                  function_id, created_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                write.collection,
                write.item_id,
                new_ov,
                cv,
                blob.store_key,
                blob.bucket,
                blob.key,
                blob.content_type,
                meta_json,
                write.op.value,
                write.actor,
                write.reason,
                write.function_id,
                ts,
                deleted_at,
            ),
        )
        conn.executemany(
            """
            INSERT OR IGNORE INTO version_blobs (collection, item_id, ov, store_key, bucket, blob_key)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (write.collection, write.item_id, new_ov, ref.store_key, ref.bucket, ref.key)
                for ref in (blob, *write.extra_blobs)
            ],
        )
        if write.inherit_blobs and write.expected_ov is not None:
            conn.execute(
                """
                INSERT OR IGNORE INTO version_blobs (collection, item_id, ov, store_key, bucket, blob_key)
                SELECT collection, item_id, ?, store_key, bucket, blob_key FROM version_blobs
                WHERE collection = ? AND item_id = ? AND ov = ?
                """,
                (new_ov, write.collection, write.item_id, write.expected_ov),
            )
        return CommitResult(
            item_id=write.item_id,
            ov=new_ov,
            cv=cv,
            created_at=ts,
            deleted_at=deleted_at,
        )

    async def commit(self, db_name: str, write: VersionWrite) -> CommitResult:
        """Apply one conditional write in its own transaction."""
        with self._get_connection(db_name) as conn:
            with self._transaction(conn):
                return self._apply(conn, write)

    async def commit_batch(self, db_name: str, writes: list[VersionWrite]) -> list[BatchOutcome]:
        """Apply many conditional writes in one transaction.

        Each member runs under its own savepoint, so a conflict rolls back only
        that member.
        """
        results: list[BatchOutcome] = []
        with self._get_connection(db_name) as conn:
            with self._transaction(conn):
                for write in writes:
                    conn.execute("SAVEPOINT member")
                    try:
                        results.append(self._apply(conn, write))
                        conn.execute("RELEASE member")
                    except (ConflictError, NotFoundError, ValidationError) as e:
                        conn.execute("ROLLBACK TO member")
                        conn.execute("RELEASE member")
                        results.append(e)
        return results

    async def get_head(self, db_name: str, collection: str, item_id: str) -> ItemHead | None:
        with self._get_connection(db_name) as conn:
            row = conn.execute(
                "SELECT * FROM items WHERE collection = ? AND item_id = ?",
                (collection, item_id),
            ).fetchone()
            return _row_to_head(row) if row else None

    async def get_version(
        self, db_name: str, collection: str, item_id: str, ov: int
    ) -> VersionRecord | None:
        with self._get_connection(db_name) as conn:
            row = conn.execute(
                "SELECT * FROM versions WHERE collection = ? AND item_id = ? AND ov = ?",
                (collection, item_id, ov),
            ).fetchone()
            return _row_to_version(row) if row else None

    async def get_version_as_of(
        self, db_name: str, collection: str, item_id: str, ts_ms: int
    ) -> VersionRecord | None:
        """Latest retained version written at or before ``ts_ms``."""
        with self._get_connection(db_name) as conn:
            row = conn.execute(
                """
                SELECT * FROM versions
                WHERE collection = ? AND item_id = ? AND created_at <= ?
                ORDER BY ov DESC LIMIT 1
                """,
                (collection, item_id, ts_ms),
            ).fetchone()
            return _row_to_version(row) if row else None

    async def item_blob_keys(self, db_name: str, collection: str, item_id: str) -> set[tuple[str, str, str]]:
        """(store_key, bucket, key) of every blob a retained version of the item references."""
        with self._get_connection(db_name) as conn:
            cursor = conn.execute(
                """
                SELECT DISTINCT store_key, bucket, blob_key FROM version_blobs
                WHERE collection = ? AND item_id = ?
                """,
                (collection, item_id),
            )
            return {(row["store_key"], row["bucket"], row["blob_key"]) for row in cursor.fetchall()}

    async def list_versions(self, db_name: str, collection: str, item_id: str) -> list[VersionRecord]:
        with self._get_connection(db_name) as conn:
            cursor = conn.execute(
                "SELECT * FROM versions WHERE collection = ? AND item_id = ? ORDER BY ov ASC",
                (collection, item_id),
            )
            return [_row_to_version(row) for row in cursor.fetchall()]

    async def query(
        self,
        db_name: str,
        collection: str,
        predicates: list[Predicate],
        sort: SortSpec,
        limit: int,
        cursor: Cursor | None = None,
        after_id: str | None = None,
        include_deleted: bool = False,
    ) -> QueryPage:
        """Indexed listing of item heads.

        Returns at most ``limit`` heads in (sort value, item_id) order together
        with each head's sort value.

        Raises:
            NotFoundError: If ``after_id`` names an unknown item
        """
        sort_expr = "item_id" if sort.by_id else _extract_expr(sort.field)
        where = ["collection = ?"]
        params: list[Any] = [collection]
        if not include_deleted:
            where.append("deleted_at IS NULL")
        for predicate in predicates:
            sql, predicate_params = _predicate_sql(predicate)
            where.append(sql)
            params.extend(predicate_params)

        with self._get_connection(db_name) as conn:
            if cursor is None and after_id is not None:
                row = conn.execute(
                    f"SELECT {sort_expr} AS sort_value FROM items WHERE collection = ? AND item_id = ?",
                    (collection, after_id),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"after_id not found: {after_id}", "item", after_id)
                cursor = Cursor(value=row["sort_value"], item_id=after_id)

            if cursor is not None:
                sql, cursor_params = _cursor_sql(sort, sort_expr, cursor)
                where.append(sql)
                params.extend(cursor_params)

            direction = "ASC" if sort.direction == 1 else "DESC"
            order = f"item_id {direction}" if sort.by_id else f"{sort_expr} {direction}, item_id ASC"
            rows = conn.execute(
                f"""
                SELECT *, {sort_expr} AS sort_value FROM items
                WHERE {' AND '.join(where)}
                ORDER BY {order}
                LIMIT ?
                """,
                (*params, limit),
            ).fetchall()

        return QueryPage(
            heads=[_row_to_head(row) for row in rows],
            sort_values=[row["sort_value"] for row in rows],
        )

    async def prune_versions(
        self,
        db_name: str,
        collection: str,
        older_than_ms: int | None,
        max_per_item: int | None,
    ) -> PruneResult:
        """Delete non-current versions older than the cutoff or beyond the newest N.

        Both rules select a prefix of an item's chain (created_at is monotonic
        in ov), so each item is pruned up to a single bound in one transaction.
        """
        result = PruneResult()
        if older_than_ms is None and max_per_item is None:
            return result

        rules, rule_params = [], []
        if older_than_ms is not None:
            rules.append("v.created_at < ?")
            rule_params.append(older_than_ms)
        if max_per_item is not None:
            rules.append("v.ov <= i.ov - ?")
            rule_params.append(max_per_item)
        rule_sql = " OR ".join(rules)

        with self._get_connection(db_name) as conn:
            item_ids = [
                row["item_id"]
                for row in conn.execute(
                    f"""
                    SELECT DISTINCT v.item_id FROM versions v
                    JOIN items i ON i.collection = v.collection AND i.item_id = v.item_id
                    WHERE v.collection = ? AND v.ov < i.ov AND ({rule_sql})
                    """,
                    (collection, *rule_params),
                ).fetchall()
            ]

            for item_id in item_ids:
                with self._transaction(conn):
                    bound = conn.execute(
                        f"""
                        SELECT MAX(v.ov) AS bound FROM versions v
                        JOIN items i ON i.collection = v.collection AND i.item_id = v.item_id
                        WHERE v.collection = ? AND v.item_id = ? AND v.ov < i.ov AND ({rule_sql})
                        """,
                        (collection, item_id, *rule_params),
                    ).fetchone()["bound"]
                    if bound is None:
                        continue

                    refs = conn.execute(
                        """
                        SELECT DISTINCT store_key, bucket, blob_key FROM version_blobs
                        WHERE collection = ? AND item_id = ? AND ov <= ?
                        """,
                        (collection, item_id, bound),
                    ).fetchall()
                    conn.execute(
                        """
                        DELETE FROM version_blobs
                        WHERE collection = ? AND item_id = ? AND ov <= ?
                          AND ov < (SELECT ov FROM items WHERE collection = ? AND item_id = ?)
                        """,
                        (collection, item_id, bound, collection, item_id),
                    )
                    deleted = conn.execute(
                        """
                        DELETE FROM versions
                        WHERE collection = ? AND item_id = ? AND ov <= ?
                          AND ov < (SELECT ov FROM items WHERE collection = ? AND item_id = ?)
                        """,
                        (collection, item_id, bound, collection, item_id),
                    ).rowcount

                    for ref in refs:
                        still_referenced = conn.execute(
                            """
                            SELECT 1 FROM version_blobs
                            WHERE store_key = ? AND bucket = ? AND blob_key = ? LIMIT 1
                            """,
                            (ref["store_key"], ref["bucket"], ref["blob_key"]),
                        ).fetchone()
                        if still_referenced is None:
                            result.orphaned_blobs.append(
                                BlobRef(store_key=ref["store_key"], bucket=ref["bucket"], key=ref["blob_key"])
                            )

                result.versions_deleted += deleted
                result.items_touched += 1

        if result.versions_deleted:
            logger.info(
                "Pruned versions",
                extra={
                    "db_name": db_name,
                    "collection": collection,
                    "versions_deleted": result.versions_deleted,
                    "orphaned_blobs": len(result.orphaned_blobs),
                },
            )
        return result

    async def clear_expired_shadows(self, db_name: str, now_ms: int) -> int:
        """Drop dev-shadow payloads whose TTL has passed."""
        with self._get_connection(db_name) as conn:
            cursor = conn.execute(
                """
                UPDATE items SET shadow_json = NULL, shadow_expires_at = NULL
                WHERE shadow_expires_at IS NOT NULL AND shadow_expires_at <= ?
                """,
                (now_ms,),
            )
            return cursor.rowcount

    async def collections(self, db_name: str) -> list[str]:
        with self._get_connection(db_name) as conn:
            return [
                row["collection"]
                for row in conn.execute("SELECT collection FROM collections ORDER BY collection")
            ]

    async def get_stats(self, db_name: str) -> dict[str, int]:
        """Row counts for a database."""
        with self._get_connection(db_name) as conn:
            items = conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
            versions = conn.execute("SELECT COUNT(*) FROM versions").fetchone()[0]
            deleted = conn.execute(
                "SELECT COUNT(*) FROM items WHERE deleted_at IS NOT NULL"
            ).fetchone()[0]
        return {"items": items, "versions": versions, "deleted_items": deleted}

    async def close(self) -> None:
        """Close the store. Connections are per-operation, so this only blocks new work."""
        self._closed = True
