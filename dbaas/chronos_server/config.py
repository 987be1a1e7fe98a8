"""
Configuration management for Chronos Server.

Configuration is resolved once at startup and is immutable for the process
lifetime (no hot reload). It comes from two places:

- A structured file (YAML or JSON) named by CHRONOS_CONFIG_FILE describing
  connection pools, database tiers, collection maps, counter rules and policies
- Environment variables for tunables and for a single-database setup when no
  file is given

Invariants:
    - All settings have sensible defaults for local development
    - Routing-relevant settings (pools, tiers) are validated before the engine starts
    - Secrets are never logged or exposed in error messages or reprs

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_dict() accepting both snake_case and the camelCase names used by
      existing config files
    - Pool membership changes require a restart; routing is not patched in place
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TIERS = ("metadata", "knowledge", "runtime")
COUNTER_TRIGGERS = ("CREATE", "UPDATE")
COUNTER_SCOPES = ("meta", "tenant")

# Indexed prop names end up in SQLite JSON paths and index names
_PROP_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class HashAlgo(Enum):
    """Routing hash algorithms."""

    RENDEZVOUS = "rendezvous"
    JUMP = "jump"


def _pick(data: dict[str, Any], *names: str, default: Any = None) -> Any:
    """Return the first present key among snake_case/camelCase spellings."""
    for name in names:
        if name in data:
            return data[name]
    return default


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


def sqlite_data_dir(uri: str) -> str:
    """Extract the data directory from a ``sqlite://`` metadata URI.

    ``sqlite:///data/chronos`` is relative, ``sqlite:////var/lib/chronos`` is absolute.

    Raises:
        ConfigurationError: If the URI does not use the sqlite scheme
    """
    prefix = "sqlite://"
    if not uri.startswith(prefix):
        raise ConfigurationError(
            f"Unsupported metadata store URI scheme: {uri.split(':', 1)[0]}",
            setting="metadata_connections.uri",
        )
    rest = uri[len(prefix):]
    if rest.startswith("//"):
        return rest[1:]
    path = rest.lstrip("/")
    if not path:
        raise ConfigurationError("Metadata store URI has no path", setting="metadata_connections.uri")
    return path


@dataclass(frozen=True)
class MetadataConnection:
    """A metadata store connection in the routing pool.

    Attributes:
        key: Unique connection key (hashed for routing)
        uri: Store URI (``sqlite:///<data_dir>``)
        weight: Relative weight for rendezvous hashing
    """

    key: str
    uri: str
    weight: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int) -> MetadataConnection:
        if isinstance(data, str):
            return cls(key=f"meta-{index}", uri=data)
        return cls(
            key=data.get("key", f"meta-{index}"),
            uri=_pick(data, "uri"),
            weight=float(data.get("weight", 1.0)),
        )


@dataclass(frozen=True)
class ObjectStoreConnection:
    """An S3-compatible object store connection in the routing pool.

    ``endpoint`` selects the backend: ``memory://`` for the in-process store,
    ``file:///path`` for the local filesystem store, anything else is S3.

    Attributes:
        key: Unique connection key (hashed for routing)
        endpoint: Endpoint URL
        region: Region name
        access_key: Access key ID
        secret_key: Secret access key (never logged)
        backups_bucket: Bucket for backups
        json_bucket: Bucket for JSON payloads
        content_bucket: Bucket for raw externalized content
        versions_bucket: Bucket for version payloads (defaults to json_bucket)
        force_path_style: Path-style addressing instead of virtual-hosted
        weight: Relative weight for rendezvous hashing
    """

    key: str
    endpoint: str
    region: str = "us-east-1"
    access_key: str | None = None
    secret_key: str | None = field(default=None, repr=False)
    backups_bucket: str = "chronos-backups"
    json_bucket: str = "chronos-json"
    content_bucket: str = "chronos-content"
    versions_bucket: str | None = None
    force_path_style: bool = False
    weight: float = 1.0

    @property
    def kind(self) -> str:
        if self.endpoint.startswith("memory://"):
            return "memory"
        if self.endpoint.startswith("file://"):
            return "local"
        return "s3"

    def bucket_for(self, role: str) -> str:
        """Resolve a bucket role (backups, json, content, versions) to a bucket name."""
        if role == "versions":
            return self.versions_bucket or self.json_bucket
        buckets = {
            "backups": self.backups_bucket,
            "json": self.json_bucket,
            "content": self.content_bucket,
        }
        if role not in buckets:
            raise ConfigurationError(f"Unknown bucket role: {role}", setting="object_stores")
        return buckets[role]

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int) -> ObjectStoreConnection:
        return cls(
            key=data.get("key", f"s3-{index}"),
            endpoint=data["endpoint"],
            region=data.get("region", "us-east-1"),
            access_key=_pick(data, "access_key", "accessKey"),
            secret_key=_pick(data, "secret_key", "secretKey"),
            backups_bucket=_pick(data, "backups_bucket", "backupsBucket", default="chronos-backups"),
            json_bucket=_pick(data, "json_bucket", "jsonBucket", default="chronos-json"),
            content_bucket=_pick(data, "content_bucket", "contentBucket", default="chronos-content"),
            versions_bucket=_pick(data, "versions_bucket", "versionsBucket"),
            force_path_style=bool(_pick(data, "force_path_style", "forcePathStyle", default=False)),
            weight=float(data.get("weight", 1.0)),
        )


@dataclass(frozen=True)
class LocalStorageConfig:
    """Filesystem object store used when no S3 credentials are configured."""

    enabled: bool = False
    base_path: str = "./local-storage"

    def as_connection(self) -> ObjectStoreConnection:
        return ObjectStoreConnection(
            key="local",
            endpoint=f"file://{Path(self.base_path).resolve()}",
        )


@dataclass(frozen=True)
class DatabaseEntry:
    """A logical database within a tier.

    Attributes:
        key: Unique entry key
        db_name: Database name (one SQLite file per name)
        ext_identifier: Tenant or domain identifier (None for the generic entry)
        uri: Pinned metadata store URI (None routes through the pool)
    """

    key: str
    db_name: str
    ext_identifier: str | None = None
    uri: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatabaseEntry:
        return cls(
            key=data["key"],
            db_name=_pick(data, "db_name", "dbName"),
            ext_identifier=_pick(data, "ext_identifier", "extIdentifier"),
            uri=_pick(data, "uri"),
        )


@dataclass(frozen=True)
class TierConfig:
    """Generic, domain and tenant databases of one tier."""

    generic: DatabaseEntry | None = None
    domains: tuple[DatabaseEntry, ...] = ()
    tenants: tuple[DatabaseEntry, ...] = ()

    def entries(self) -> list[DatabaseEntry]:
        result = [self.generic] if self.generic else []
        return result + list(self.domains) + list(self.tenants)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TierConfig:
        generic = data.get("generic")
        return cls(
            generic=DatabaseEntry.from_dict(generic) if generic else None,
            domains=tuple(DatabaseEntry.from_dict(d) for d in data.get("domains", [])),
            tenants=tuple(DatabaseEntry.from_dict(t) for t in data.get("tenants", [])),
        )


@dataclass(frozen=True)
class RoutingConfig:
    """Routing policy.

    Attributes:
        hash_algo: Rendezvous or jump consistent hashing
        choose_key: ``|``-separated routing key template (tenantId, dbName, tier, collection)
    """

    hash_algo: HashAlgo = HashAlgo.RENDEZVOUS
    choose_key: str = "tenantId|dbName"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingConfig:
        algo = _pick(data, "hash_algo", "hashAlgo", default="rendezvous")
        try:
            hash_algo = HashAlgo(algo)
        except ValueError:
            raise ConfigurationError(
                f"Invalid routing hash_algo '{algo}'. Must be one of: rendezvous, jump",
                setting="routing.hash_algo",
            )
        return cls(
            hash_algo=hash_algo,
            choose_key=_pick(data, "choose_key", "chooseKey", default="tenantId|dbName"),
        )


@dataclass(frozen=True)
class VersionRetention:
    """Version retention: age in days and max versions kept per item (None = unlimited)."""

    days: int | None = None
    max_per_item: int | None = None


@dataclass(frozen=True)
class CounterRetention:
    """How many day, week and month rollup buckets to keep (None = unlimited)."""

    days: int | None = None
    weeks: int | None = None
    months: int | None = None


@dataclass(frozen=True)
class RetentionConfig:
    """Retention policy and sweeper schedule."""

    ver: VersionRetention = field(default_factory=VersionRetention)
    counters: CounterRetention = field(default_factory=CounterRetention)
    sweep_interval_seconds: int = 3600
    sweeper_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetentionConfig:
        ver = data.get("ver", {})
        counters = data.get("counters", {})
        return cls(
            ver=VersionRetention(
                days=ver.get("days"),
                max_per_item=_pick(ver, "max_per_item", "maxPerItem"),
            ),
            counters=CounterRetention(
                days=counters.get("days"),
                weeks=counters.get("weeks"),
                months=counters.get("months"),
            ),
            sweep_interval_seconds=int(
                _pick(data, "sweep_interval_seconds", "sweepIntervalSeconds", default=3600)
            ),
            sweeper_enabled=bool(_pick(data, "sweeper_enabled", "sweeperEnabled", default=True)),
        )


@dataclass(frozen=True)
class RollupConfig:
    """Counter rollup schedule."""

    enabled: bool = False
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollupConfig:
        return cls(
            enabled=bool(data.get("enabled", False)),
            interval_seconds=int(_pick(data, "interval_seconds", "intervalSeconds", default=300)),
        )


@dataclass(frozen=True)
class Base64Prop:
    """An externalized content field: base64 on write, stored as a raw blob."""

    content_type: str = "application/octet-stream"
    preferred_text: bool = False
    text_charset: str = "utf-8"


@dataclass(frozen=True)
class CollectionMap:
    """Collection schema.

    Attributes:
        indexed_props: Payload fields (dotted paths allowed) projected into the index
        required_indexed: Indexed fields every write must carry
        base64_props: Fields externalized to the content bucket
    """

    indexed_props: tuple[str, ...] = ()
    required_indexed: tuple[str, ...] = ()
    base64_props: dict[str, Base64Prop] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CollectionMap:
        validation = data.get("validation", {})
        base64_props = {
            name: Base64Prop(
                content_type=_pick(spec, "content_type", "contentType", default="application/octet-stream"),
                preferred_text=bool(_pick(spec, "preferred_text", "preferredText", default=False)),
                text_charset=_pick(spec, "text_charset", "textCharset", default="utf-8"),
            )
            for name, spec in _pick(data, "base64_props", "base64Props", default={}).items()
        }
        return cls(
            indexed_props=tuple(_pick(data, "indexed_props", "indexedProps", default=())),
            required_indexed=tuple(
                _pick(validation, "required_indexed", "requiredIndexed", default=())
            ),
            base64_props=base64_props,
        )


@dataclass(frozen=True)
class CounterRule:
    """Conditional counter rule.

    Attributes:
        name: Counter name
        when: Predicate over the payload (filter grammar)
        on: Triggering events (CREATE, UPDATE)
        scope: ``meta`` (global) or ``tenant``
    """

    name: str
    when: dict[str, Any] = field(default_factory=dict)
    on: tuple[str, ...] = COUNTER_TRIGGERS
    scope: str = "meta"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CounterRule:
        return cls(
            name=data["name"],
            when=dict(data.get("when", {})),
            on=tuple(t.upper() for t in data.get("on", COUNTER_TRIGGERS)),
            scope=data.get("scope", "meta"),
        )


@dataclass(frozen=True)
class CountersConfig:
    """Counter store location (defaults to the first metadata connection)."""

    uri: str | None = None
    db_name: str = "chronos_counters"


@dataclass(frozen=True)
class DevShadowConfig:
    """Full payload snapshots kept on the item head for fast reads."""

    enabled: bool = False
    ttl_hours: int = 24


@dataclass(frozen=True)
class WriteOptimizationConfig:
    """Write batching and debouncing.

    Attributes:
        enabled: Buffer writes per shard
        batch_size: Flush when a shard buffer holds this many writes
        batch_s3: Buffer object-store puts too (otherwise put on the caller path)
        batch_window_ms: Flush at most this long after the first buffered write
        debounce_counters_ms: Coalesce counter deltas for this long
        allow_shadow_skip: Batched writes clear the dev shadow instead of rewriting it
        max_pending_writes: Buffer capacity across all shards
        max_retries: Storage retries per flush
        retry_delay_ms: Base backoff between retries
    """

    enabled: bool = False
    batch_size: int = 100
    batch_s3: bool = True
    batch_window_ms: int = 1000
    debounce_counters_ms: int = 500
    allow_shadow_skip: bool = False
    max_pending_writes: int = 10000
    max_retries: int = 3
    retry_delay_ms: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WriteOptimizationConfig:
        return cls(
            enabled=bool(data.get("enabled", False)),
            batch_size=int(_pick(data, "batch_size", "batchSize", default=100)),
            batch_s3=bool(_pick(data, "batch_s3", "batchS3", default=True)),
            batch_window_ms=int(_pick(data, "batch_window_ms", "batchWindowMs", default=1000)),
            debounce_counters_ms=int(
                _pick(data, "debounce_counters_ms", "debounceCountersMs", default=500)
            ),
            allow_shadow_skip=bool(_pick(data, "allow_shadow_skip", "allowShadowSkip", default=False)),
            max_pending_writes=int(
                _pick(data, "max_pending_writes", "maxPendingWrites", default=10000)
            ),
            max_retries=int(_pick(data, "max_retries", "maxRetries", default=3)),
            retry_delay_ms=int(_pick(data, "retry_delay_ms", "retryDelayMs", default=100)),
        )

    def with_env(self) -> WriteOptimizationConfig:
        """Overlay WRITE_* environment variables."""
        return WriteOptimizationConfig(
            enabled=_env_bool("WRITE_OPTIMIZATION_ENABLED", self.enabled),
            batch_size=int(os.getenv("WRITE_BATCH_SIZE", str(self.batch_size))),
            batch_s3=_env_bool("WRITE_BATCH_S3", self.batch_s3),
            batch_window_ms=int(os.getenv("WRITE_BATCH_WINDOW_MS", str(self.batch_window_ms))),
            debounce_counters_ms=int(
                os.getenv("WRITE_DEBOUNCE_COUNTERS_MS", str(self.debounce_counters_ms))
            ),
            allow_shadow_skip=_env_bool("WRITE_ALLOW_SHADOW_SKIP", self.allow_shadow_skip),
            max_pending_writes=int(
                os.getenv("WRITE_MAX_PENDING", str(self.max_pending_writes))
            ),
            max_retries=int(os.getenv("WRITE_MAX_RETRIES", str(self.max_retries))),
            retry_delay_ms=int(os.getenv("WRITE_RETRY_DELAY_MS", str(self.retry_delay_ms))),
        )


@dataclass(frozen=True)
class VersioningConfig:
    """Version manager tunables."""

    enrich_max_retries: int = 5
    enrich_retry_delay_ms: int = 10


@dataclass(frozen=True)
class PresignConfig:
    """Presigned URL settings.

    Attributes:
        default_ttl_seconds: TTL used when a read asks for presigning without one
        signing_secret: HMAC secret for local and in-memory store URLs
    """

    default_ttl_seconds: int = 3600
    signing_secret: str = field(default="chronos-dev-secret", repr=False)

    @classmethod
    def from_env(cls) -> PresignConfig:
        return cls(
            default_ttl_seconds=int(os.getenv("PRESIGN_DEFAULT_TTL", "3600")),
            signing_secret=os.getenv("PRESIGN_SIGNING_SECRET", "chronos-dev-secret"),
        )


@dataclass(frozen=True)
class SqliteConfig:
    """SQLite tuning for metadata and counter stores.

    Attributes:
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> SqliteConfig:
        return cls(
            wal_mode=_env_bool("SQLITE_WAL_MODE", True),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ChronosConfig:
    """Complete engine configuration.

    Attributes:
        metadata_connections: Metadata store pool
        object_stores: Object store pool
        databases: Tier name -> TierConfig
        routing: Routing policy
        retention: Retention policy
        rollup: Counter rollup schedule
        collection_maps: Collection name -> CollectionMap
        counter_rules: Conditional counter rules
        counters: Counter store location
        dev_shadow: Dev shadow settings
        write_optimization: Write batching settings
        versioning: Version manager tunables
        presign: Presign settings
        local_storage: Filesystem object store fallback
        sqlite: SQLite tuning
        observability: Logging settings
    """

    metadata_connections: tuple[MetadataConnection, ...] = ()
    object_stores: tuple[ObjectStoreConnection, ...] = ()
    databases: dict[str, TierConfig] = field(default_factory=dict)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    rollup: RollupConfig = field(default_factory=RollupConfig)
    collection_maps: dict[str, CollectionMap] = field(default_factory=dict)
    counter_rules: tuple[CounterRule, ...] = ()
    counters: CountersConfig = field(default_factory=CountersConfig)
    dev_shadow: DevShadowConfig = field(default_factory=DevShadowConfig)
    write_optimization: WriteOptimizationConfig = field(default_factory=WriteOptimizationConfig)
    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    presign: PresignConfig = field(default_factory=PresignConfig)
    local_storage: LocalStorageConfig = field(default_factory=LocalStorageConfig)
    sqlite: SqliteConfig = field(default_factory=SqliteConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChronosConfig:
        """Build configuration from a parsed config document.

        Raises:
            ConfigurationError: If the document is malformed or inconsistent
        """
        try:
            metadata_connections = tuple(
                MetadataConnection.from_dict(c, i)
                for i, c in enumerate(
                    _pick(data, "metadata_connections", "metadataConnections", default=[])
                )
            )
            local_storage_data = _pick(data, "local_storage", "localStorage", default={})
            local_storage = LocalStorageConfig(
                enabled=bool(local_storage_data.get("enabled", False)),
                base_path=_pick(local_storage_data, "base_path", "basePath", default="./local-storage"),
            )
            object_stores = tuple(
                ObjectStoreConnection.from_dict(c, i)
                for i, c in enumerate(
                    _pick(data, "object_stores", "objectStores", "spacesConns", default=[])
                )
            )
            if not object_stores and local_storage.enabled:
                object_stores = (local_storage.as_connection(),)

            databases = {
                tier: TierConfig.from_dict(tier_data)
                for tier, tier_data in data.get("databases", {}).items()
            }
            counters_data = data.get("counters", {})
            dev_shadow_data = _pick(data, "dev_shadow", "devShadow", default={})
            versioning_data = data.get("versioning", {})
            presign_data = data.get("presign", {})
            rules_data = _pick(data, "counter_rules", "counterRules", default=[])
            if isinstance(rules_data, dict):
                rules_data = rules_data.get("rules", [])

            config = cls(
                metadata_connections=metadata_connections,
                object_stores=object_stores,
                databases=databases,
                routing=RoutingConfig.from_dict(data.get("routing", {})),
                retention=RetentionConfig.from_dict(data.get("retention", {})),
                rollup=RollupConfig.from_dict(data.get("rollup", {})),
                collection_maps={
                    name: CollectionMap.from_dict(cmap)
                    for name, cmap in _pick(data, "collection_maps", "collectionMaps", default={}).items()
                },
                counter_rules=tuple(CounterRule.from_dict(r) for r in rules_data),
                counters=CountersConfig(
                    uri=_pick(counters_data, "uri"),
                    db_name=_pick(counters_data, "db_name", "dbName", default="chronos_counters"),
                ),
                dev_shadow=DevShadowConfig(
                    enabled=bool(dev_shadow_data.get("enabled", False)),
                    ttl_hours=int(_pick(dev_shadow_data, "ttl_hours", "ttlHours", default=24)),
                ),
                write_optimization=WriteOptimizationConfig.from_dict(
                    _pick(data, "write_optimization", "writeOptimization", default={})
                ),
                versioning=VersioningConfig(
                    enrich_max_retries=int(versioning_data.get("enrich_max_retries", 5)),
                    enrich_retry_delay_ms=int(versioning_data.get("enrich_retry_delay_ms", 10)),
                ),
                presign=PresignConfig(
                    default_ttl_seconds=int(presign_data.get("default_ttl_seconds", 3600)),
                    signing_secret=presign_data.get("signing_secret", "chronos-dev-secret"),
                ),
                local_storage=local_storage,
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Malformed configuration: {e}")

        config.validate()
        return config

    @classmethod
    def from_file(cls, path: str) -> ChronosConfig:
        """Load configuration from a YAML or JSON file."""
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}", setting="CHRONOS_CONFIG_FILE")
        text = config_path.read_text(encoding="utf-8")
        if config_path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> ChronosConfig:
        """Load complete configuration from the environment.

        With CHRONOS_CONFIG_FILE the structured file is loaded; otherwise a
        single ``runtime`` generic database is configured from
        CHRONOS_METADATA_URI and the S3 variables. Missing S3 credentials fall
        back to the local filesystem store.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        config_file = os.getenv("CHRONOS_CONFIG_FILE")
        if config_file:
            base = cls.from_file(config_file)
        else:
            metadata_uri = os.getenv("CHRONOS_METADATA_URI", "sqlite:////var/lib/chronos")
            access_key = os.getenv("SPACE_ACCESS_KEY") or os.getenv("AWS_ACCESS_KEY_ID")
            secret_key = os.getenv("SPACE_SECRET_KEY") or os.getenv("AWS_SECRET_ACCESS_KEY")
            local_storage = LocalStorageConfig(
                enabled=not (access_key and secret_key),
                base_path=os.getenv("LOCAL_STORAGE_PATH", "./local-storage"),
            )
            if local_storage.enabled:
                logger.warning(
                    "SPACE_ACCESS_KEY/SPACE_SECRET_KEY not found - using local storage instead of S3",
                    extra={"base_path": local_storage.base_path},
                )
                object_stores = (local_storage.as_connection(),)
            else:
                object_stores = (
                    ObjectStoreConnection(
                        key="s3-0",
                        endpoint=os.getenv("S3_ENDPOINT", "https://s3.amazonaws.com"),
                        region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
                        access_key=access_key,
                        secret_key=secret_key,
                        backups_bucket=os.getenv("S3_BACKUPS_BUCKET", "chronos-backups"),
                        json_bucket=os.getenv("S3_JSON_BUCKET", "chronos-json"),
                        content_bucket=os.getenv("S3_CONTENT_BUCKET", "chronos-content"),
                        force_path_style=_env_bool("S3_FORCE_PATH_STYLE", True),
                    ),
                )
            base = cls(
                metadata_connections=(MetadataConnection(key="meta-0", uri=metadata_uri),),
                object_stores=object_stores,
                databases={
                    "runtime": TierConfig(
                        generic=DatabaseEntry(key="runtime-generic", db_name="runtime_generic")
                    )
                },
                local_storage=local_storage,
            )

        config = cls(
            metadata_connections=base.metadata_connections,
            object_stores=base.object_stores,
            databases=base.databases,
            routing=base.routing,
            retention=base.retention,
            rollup=base.rollup,
            collection_maps=base.collection_maps,
            counter_rules=base.counter_rules,
            counters=base.counters,
            dev_shadow=base.dev_shadow,
            write_optimization=base.write_optimization.with_env(),
            versioning=base.versioning,
            presign=PresignConfig.from_env() if os.getenv("PRESIGN_SIGNING_SECRET") else base.presign,
            local_storage=base.local_storage,
            sqlite=SqliteConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    @property
    def counters_uri(self) -> str:
        """Counter store URI, defaulting to the first metadata connection."""
        if self.counters.uri:
            return self.counters.uri
        return self.metadata_connections[0].uri

    def collection_map(self, collection: str) -> CollectionMap:
        """Schema for a collection; unmapped collections index nothing."""
        return self.collection_maps.get(collection, CollectionMap())

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.databases:
            raise ConfigurationError("At least one database tier is required", setting="databases")

        for tier, tier_config in self.databases.items():
            if tier not in TIERS:
                raise ConfigurationError(
                    f"Unknown tier '{tier}'. Must be one of: {', '.join(TIERS)}",
                    setting="databases",
                )
            idents = [e.ext_identifier for e in tier_config.domains + tier_config.tenants]
            if len(idents) != len(set(idents)) or None in idents:
                raise ConfigurationError(
                    f"Tier '{tier}' has missing or duplicate ext_identifier values",
                    setting=f"databases.{tier}",
                )

        entries = [e for t in self.databases.values() for e in t.entries()]
        if not entries:
            raise ConfigurationError("No databases configured", setting="databases")
        for attr in ("key", "db_name"):
            values = [getattr(e, attr) for e in entries]
            if len(values) != len(set(values)):
                raise ConfigurationError(f"Duplicate database {attr} values", setting="databases")
        for entry in entries:
            if entry.uri:
                sqlite_data_dir(entry.uri)

        if any(e.uri is None for e in entries) and not self.metadata_connections:
            raise ConfigurationError(
                "Metadata connection pool is empty", setting="metadata_connections"
            )
        if not self.object_stores:
            raise ConfigurationError("Object store pool is empty", setting="object_stores")
        for pool_name, pool in (
            ("metadata_connections", self.metadata_connections),
            ("object_stores", self.object_stores),
        ):
            keys = [c.key for c in pool]
            if len(keys) != len(set(keys)):
                raise ConfigurationError(f"Duplicate keys in {pool_name}", setting=pool_name)
            if any(c.weight <= 0 for c in pool):
                raise ConfigurationError(f"Weights in {pool_name} must be positive", setting=pool_name)
        for conn in self.metadata_connections:
            sqlite_data_dir(conn.uri)
        if self.counters.uri or self.metadata_connections:
            sqlite_data_dir(self.counters_uri)
        else:
            raise ConfigurationError("Counter store URI is required", setting="counters.uri")

        for name, cmap in self.collection_maps.items():
            for prop in cmap.indexed_props + tuple(cmap.base64_props):
                if not _PROP_NAME.match(prop):
                    raise ConfigurationError(
                        f"Invalid field name '{prop}' in collection '{name}'",
                        setting=f"collection_maps.{name}",
                    )
            missing = set(cmap.required_indexed) - set(cmap.indexed_props)
            if missing:
                raise ConfigurationError(
                    f"requiredIndexed fields not indexed in '{name}': {sorted(missing)}",
                    setting=f"collection_maps.{name}",
                )

        rule_names = [r.name for r in self.counter_rules]
        if len(rule_names) != len(set(rule_names)):
            raise ConfigurationError("Duplicate counter rule names", setting="counter_rules")
        for rule in self.counter_rules:
            if not rule.on or any(t not in COUNTER_TRIGGERS for t in rule.on):
                raise ConfigurationError(
                    f"Counter rule '{rule.name}' has invalid triggers: {rule.on}",
                    setting="counter_rules",
                )
            if rule.scope not in COUNTER_SCOPES:
                raise ConfigurationError(
                    f"Counter rule '{rule.name}' has invalid scope: {rule.scope}",
                    setting="counter_rules",
                )

        wo = self.write_optimization
        if wo.batch_size < 1 or wo.batch_window_ms < 0 or wo.debounce_counters_ms < 0:
            raise ConfigurationError("Invalid write optimization settings", setting="write_optimization")
        if wo.max_pending_writes < 1 or wo.max_retries < 0:
            raise ConfigurationError("Invalid write optimization limits", setting="write_optimization")
        if self.versioning.enrich_max_retries < 1:
            raise ConfigurationError("enrich_max_retries must be >= 1", setting="versioning")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Chronos configuration loaded",
            extra={
                "tiers": sorted(self.databases),
                "databases": [e.db_name for t in self.databases.values() for e in t.entries()],
                "metadata_connections": [c.key for c in self.metadata_connections],
                "object_stores": [
                    {"key": c.key, "endpoint": c.endpoint, "kind": c.kind}
                    for c in self.object_stores
                ],
                "hash_algo": self.routing.hash_algo.value,
                "collections": sorted(self.collection_maps),
                "counter_rules": [r.name for r in self.counter_rules],
                "write_optimization": self.write_optimization.enabled,
                "rollup_enabled": self.rollup.enabled,
                "log_level": self.observability.log_level,
            },
        )
