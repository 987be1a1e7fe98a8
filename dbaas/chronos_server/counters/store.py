"""
SQLite counter store.

Holds conditional counter totals, the raw delta events they were built from,
and time-bucketed rollups.

Invariants:
    - A delta updates the total and appends its raw event in one transaction
    - Rollup moves raw events into day, ISO-week and month buckets and deletes
      them in one transaction, so an event is counted in buckets exactly once
    - Bucket starts are UTC dates (day, Monday of the ISO week, first of month)

Table schema:
    counter_totals:
        - scope_key TEXT, name TEXT, value INTEGER, updated_at INTEGER
        - PRIMARY KEY (scope_key, name)

    counter_events:
        - id INTEGER PRIMARY KEY, scope_key, name, delta INTEGER, at INTEGER

    counter_buckets:
        - scope_key, name, granularity ('day', 'week', 'month'), bucket_start TEXT, value
        - PRIMARY KEY (scope_key, name, granularity, bucket_start)
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from ..config import CounterRetention
from ..errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

GRANULARITIES = ("day", "week", "month")


@dataclass(frozen=True)
class CounterDelta:
    """A change to one counter.

    Attributes:
        scope_key: ``meta`` or ``tenant:<scope>``
        name: Counter name
        delta: Signed change
        at: Event time (Unix ms)
    """

    scope_key: str
    name: str
    delta: int
    at: int


@dataclass(frozen=True)
class CounterBucket:
    """One rollup bucket."""

    granularity: str
    start: str
    value: int


@dataclass
class RollupResult:
    events_rolled: int = 0
    buckets_pruned: int = 0


def utc_date(ts_ms: int) -> date:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).date()


def bucket_start(day: date, granularity: str) -> date:
    """First day of the bucket containing ``day``."""
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    raise ValidationError(f"Unknown granularity: {granularity}", field_name="granularity")


def _months_back(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)


def retention_cutoff(today: date, granularity: str, keep: int) -> date:
    """Oldest bucket start kept when keeping ``keep`` periods including the current one."""
    current = bucket_start(today, granularity)
    periods_back = max(keep - 1, 0)
    if granularity == "day":
        return current - timedelta(days=periods_back)
    if granularity == "week":
        return current - timedelta(weeks=periods_back)
    return _months_back(current, periods_back)


class CounterStore:
    """Counter totals and rollups in a dedicated SQLite database.

    Example:
        >>> store = CounterStore("/var/lib/chronos", "chronos_counters")
        >>> await store.apply_deltas([CounterDelta("meta", "active_users", 1, now_ms)])
        >>> await store.get_total("meta", "active_users")
        1
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        safe_name = "".join(c for c in self.db_name if c.isalnum() or c in "-_")
        return self.data_dir / f"{safe_name}.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open counter store: {e}", backend="counters", operation="connect") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Counter store error: {e}", backend="counters", operation="execute") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS counter_totals (
                scope_key TEXT NOT NULL,
                name TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (scope_key, name)
            );

            CREATE TABLE IF NOT EXISTS counter_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope_key TEXT NOT NULL,
                name TEXT NOT NULL,
                delta INTEGER NOT NULL,
                at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS counter_buckets (
                scope_key TEXT NOT NULL,
                name TEXT NOT NULL,
                granularity TEXT NOT NULL,
                bucket_start TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (scope_key, name, granularity, bucket_start)
            );
        """)

    async def apply_deltas(self, deltas: list[CounterDelta]) -> None:
        """Add deltas to totals and record their raw events atomically."""
        if not deltas:
            return
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for d in deltas:
                    conn.execute(
                        """
                        INSERT INTO counter_totals (scope_key, name, value, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(scope_key, name)
                        DO UPDATE SET value = value + excluded.value, updated_at = excluded.updated_at
                        """,
                        (d.scope_key, d.name, d.delta, d.at),
                    )
                conn.executemany(
                    "INSERT INTO counter_events (scope_key, name, delta, at) VALUES (?, ?, ?, ?)",
                    [(d.scope_key, d.name, d.delta, d.at) for d in deltas],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def get_total(self, scope_key: str, name: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM counter_totals WHERE scope_key = ? AND name = ?",
                (scope_key, name),
            ).fetchone()
            return row["value"] if row else 0

    async def get_buckets(
        self, scope_key: str, name: str, granularity: str
    ) -> list[CounterBucket]:
        if granularity not in GRANULARITIES:
            raise ValidationError(f"Unknown granularity: {granularity}", field_name="granularity")
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT bucket_start, value FROM counter_buckets
                WHERE scope_key = ? AND name = ? AND granularity = ?
                ORDER BY bucket_start ASC
                """,
                (scope_key, name, granularity),
            ).fetchall()
        return [CounterBucket(granularity, row["bucket_start"], row["value"]) for row in rows]

    async def pending_events(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM counter_events").fetchone()[0]

    async def rollup(self, now_ms: int, retention: CounterRetention) -> RollupResult:
        """Fold raw events into buckets, then prune buckets beyond retention."""
        result = RollupResult()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    "SELECT id, scope_key, name, delta, at FROM counter_events WHERE at <= ? ORDER BY id",
                    (now_ms,),
                ).fetchall()

                sums: dict[tuple[str, str, str, str], int] = defaultdict(int)
                for row in rows:
                    day = utc_date(row["at"])
                    for granularity in GRANULARITIES:
                        start = bucket_start(day, granularity).isoformat()
                        sums[(row["scope_key"], row["name"], granularity, start)] += row["delta"]

                conn.executemany(
                    """
                    INSERT INTO counter_buckets (scope_key, name, granularity, bucket_start, value)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(scope_key, name, granularity, bucket_start)
                    DO UPDATE SET value = value + excluded.value
                    """,
                    [(*key, value) for key, value in sums.items()],
                )
                conn.executemany(
                    "DELETE FROM counter_events WHERE id = ?", [(row["id"],) for row in rows]
                )
                result.events_rolled = len(rows)

                today = utc_date(now_ms)
                for granularity, keep in (
                    ("day", retention.days),
                    ("week", retention.weeks),
                    ("month", retention.months),
                ):
                    if keep is None:
                        continue
                    cutoff = retention_cutoff(today, granularity, keep).isoformat()
                    result.buckets_pruned += conn.execute(
                        "DELETE FROM counter_buckets WHERE granularity = ? AND bucket_start < ?",
                        (granularity, cutoff),
                    ).rowcount

                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return result
