"""
Shared fixtures for the Chronos test suite.
"""

import tempfile

import pytest

from dbaas.chronos_server import Chronos
from dbaas.chronos_server.config import (
    ChronosConfig,
    CollectionMap,
    DatabaseEntry,
    MetadataConnection,
    ObjectStoreConnection,
    RetentionConfig,
    TierConfig,
)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


def build_config(data_dir: str, **overrides) -> ChronosConfig:
    """Single metadata connection, in-memory object store, three runtime databases."""
    values = dict(
        metadata_connections=(MetadataConnection(key="meta-0", uri=f"sqlite:///{data_dir}"),),
        object_stores=(ObjectStoreConnection(key="mem-0", endpoint="memory://"),),
        databases={
            "runtime": TierConfig(
                generic=DatabaseEntry(key="runtime-generic", db_name="runtime_generic"),
                tenants=(
                    DatabaseEntry(key="tenant-a", db_name="runtime_tenant_a", ext_identifier="tenant-a"),
                    DatabaseEntry(key="tenant-b", db_name="runtime_tenant_b", ext_identifier="tenant-b"),
                ),
            )
        },
        collection_maps={
            "users": CollectionMap(
                indexed_props=("email", "status", "age", "tags"),
                required_indexed=("email",),
            ),
            "items": CollectionMap(indexed_props=("name", "value")),
        },
        retention=RetentionConfig(sweeper_enabled=False),
    )
    values.update(overrides)
    return ChronosConfig(**values)


@pytest.fixture
def config(data_dir):
    return build_config(data_dir)


@pytest.fixture
def make_config(data_dir):
    """Factory for configs sharing the test's data directory."""

    def factory(**overrides) -> ChronosConfig:
        return build_config(data_dir, **overrides)

    return factory


@pytest.fixture
async def make_chronos(make_config):
    """Factory for engines; every engine is shut down after the test."""
    engines = []

    def factory(**overrides) -> Chronos:
        engine = Chronos(make_config(**overrides))
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.admin.shutdown()


@pytest.fixture
async def chronos(make_chronos):
    return make_chronos()
