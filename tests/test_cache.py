"""Tests for the compiled model cache."""

import shutil
import tempfile
import time
from pathlib import Path

import pytest

from xsd_engine.builder import BuildConfig
from xsd_engine.cache import (
    CacheEntry,
    CachedSchemaBuilder,
    SchemaCache,
    get_cached_builder,
    parse_config_key,
)
from xsd_engine.exceptions import DocumentNotFound
from xsd_engine.monitoring import get_monitor

from conftest import schema_text


def test_cache_entry_expiration():
    """Test cache entry TTL expiration."""
    entry = CacheEntry(data="test", ttl=0.1)

    assert not entry.is_expired()
    time.sleep(0.2)
    assert entry.is_expired()


def test_cache_entry_staleness():
    """An entry goes stale when a source file is modified or removed."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".xsd", delete=False) as f:
        f.write("<original/>")
        path = Path(f.name)

    try:
        entry = CacheEntry(data="model", file_mtimes={str(path): path.stat().st_mtime})
        assert not entry.is_stale()

        time.sleep(0.1)
        path.write_text("<modified/>")
        assert entry.is_stale()
    finally:
        path.unlink()

    assert entry.is_stale()


def test_schema_cache_basic_operations():
    cache = SchemaCache(default_ttl=1.0)

    cache.set("test_key", "test_value")
    assert cache.get("test_key") == "test_value"
    assert len(cache) == 1

    assert cache.get("nonexistent") is None

    cache.invalidate("test_key")
    assert cache.get("test_key") is None

    cache.set("other", "value")
    cache.clear()
    assert len(cache) == 0


def test_schema_cache_ttl():
    cache = SchemaCache(default_ttl=0.1)

    cache.set("short_ttl", "value")
    cache.set("long_ttl", "value", ttl=60)
    assert cache.get("short_ttl") == "value"

    time.sleep(0.2)
    assert cache.get("short_ttl") is None
    assert cache.get("long_ttl") == "value"


def test_schema_cache_file_tracking(tmp_path):
    source = tmp_path / "main.xsd"
    source.write_text("<original/>")
    cache = SchemaCache()

    cache.set("file_key", "model", files=[source])
    assert cache.get("file_key") == "model"
    assert not cache.check_file_staleness("file_key")
    assert len(cache.etag("file_key")) == 32

    time.sleep(0.1)
    source.write_text("<modified/>")
    assert cache.check_file_staleness("file_key")
    assert cache.get("file_key") is None
    assert cache.check_file_staleness("file_key")


def test_keys_are_deterministic():
    cache = SchemaCache()
    assert cache._make_key("model", ("a.xsd",)) == cache._make_key("model", ("a.xsd",))
    assert cache._make_key("model", ("a.xsd",)) != cache._make_key("model", ("b.xsd",))


def test_cache_lookups_reach_monitor():
    cache = SchemaCache()
    cache.set("key", "value")
    cache.get("key")
    cache.get("missing")

    analytics = get_monitor().get_cache_analytics()
    assert analytics["hits"] == 1
    assert analytics["misses"] == 1
    assert analytics["cache_size"] == 1


def test_cache_without_monitoring():
    cache = SchemaCache(enable_monitoring=False)
    cache.get("missing")
    assert get_monitor().get_cache_analytics()["total_requests"] == 0
    assert cache.get_cache_stats() == {
        "cache_size": 0,
        "default_ttl": 3600.0,
        "monitoring_enabled": False,
    }


def test_cached_builder_reuses_model(fixtures_dir):
    builder = CachedSchemaBuilder(SchemaCache())
    entry = [str(fixtures_dir / "order.xsd")]

    first = builder.build(entry)
    assert builder.build(entry) is first
    assert builder.build(entry, force_refresh=True) is not first

    operations = get_monitor().get_performance_summary()["operations"]
    assert operations["build"]["count"] == 2


def test_cached_builder_rebuilds_when_a_document_changes(fixtures_dir, tmp_path):
    for name in ("order.xsd", "common.xsd", "address.xsd"):
        shutil.copy(fixtures_dir / name, tmp_path / name)
    builder = CachedSchemaBuilder(SchemaCache())
    entry = [str(tmp_path / "order.xsd")]

    first = builder.build(entry)
    time.sleep(0.1)
    common = tmp_path / "common.xsd"
    common.write_text(common.read_text())

    assert builder.build(entry) is not first


def test_build_from_mapping_is_keyed_by_content():
    builder = CachedSchemaBuilder(SchemaCache())
    documents = {"main.xsd": schema_text('<xs:element name="E" type="xs:string"/>')}

    first = builder.build_from_mapping(documents, ["main.xsd"])
    assert builder.build_from_mapping(dict(documents), "main.xsd") is first

    changed = {"main.xsd": schema_text('<xs:element name="E" type="xs:int"/>')}
    assert builder.build_from_mapping(changed, ["main.xsd"]) is not first
    assert builder.mapping_key(documents, ["main.xsd"]) != builder.mapping_key(
        changed, ["main.xsd"]
    )


def test_failed_builds_are_not_cached():
    cache = SchemaCache()
    builder = CachedSchemaBuilder(cache)

    with pytest.raises(DocumentNotFound):
        builder.build_from_mapping({}, ["missing.xsd"])
    assert len(cache) == 0

    build = get_monitor().get_performance_summary()["operations"]["build"]
    assert build["failures"] == 1


def test_parse_config_key():
    assert parse_config_key(None) == {}
    assert parse_config_key("max_depth=40, aggregate_errors=true") == {
        "max_depth": 40,
        "aggregate_errors": True,
    }
    assert parse_config_key("aggregate_errors=no") == {"aggregate_errors": False}


def test_get_cached_builder_applies_config():
    builder = get_cached_builder("max_depth=12,unknown_option=true")
    assert builder.config.max_depth == 12
    assert not hasattr(builder.config, "unknown_option")
    assert get_cached_builder("max_depth=12,unknown_option=true") is builder
    assert get_cached_builder().config.max_depth == BuildConfig().max_depth


def test_cached_builder_keeps_an_empty_cache():
    cache = SchemaCache()
    assert len(cache) == 0
    builder = CachedSchemaBuilder(cache)
    assert builder.cache is cache

    builder.build_from_mapping(
        {"main.xsd": schema_text('<xs:element name="E" type="xs:string"/>')}, ["main.xsd"]
    )
    assert len(cache) == 1


def test_zero_ttl_is_not_replaced_by_default():
    cache = SchemaCache(default_ttl=60)
    cache.set("key", "value", ttl=0)
    assert cache._cache["key"].ttl == 0
    time.sleep(0.01)
    assert cache.get("key") is None


def test_invalidate_all_reports_dropped_models():
    cache = SchemaCache()
    builder = CachedSchemaBuilder(cache)
    builder.build_from_mapping(
        {"main.xsd": schema_text('<xs:element name="E" type="xs:string"/>')}, ["main.xsd"]
    )

    assert builder.invalidate_all() == 1
    assert len(cache) == 0
    assert builder.invalidate_all() == 0
