"""Caching layer for compiled schema models.

Building a :class:`~xsd_engine.model.SchemaModel` means fetching and compiling
every reachable schema document, so services keep compiled models around:

    * In-memory dictionary cache with TTL and file mtime staleness checks.
    * Deterministic keys: md5 of the argument tuple.
    * Hit/miss/eviction counters reported to the performance monitor.

Models are immutable once built, so one cached model may be handed to any
number of concurrent validations.

Quick examples:

Local cache get/set::

    from xsd_engine.cache import SchemaCache
    cache = SchemaCache(default_ttl=5)
    key = cache._make_key("model", "/path/to/main.xsd")
    cache.set(key, model, files=[Path("/path/to/main.xsd")])
    assert cache.get(key) is model

Cached builder convenience::

    from xsd_engine.cache import get_cached_builder
    builder = get_cached_builder("max_depth=40")
    model = builder.build(["schemas/main.xsd"])
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

from .builder import BuildConfig, SchemaModelBuilder
from .loaders import MappingLoader, SchemaLoader
from .model import SchemaModel
from .monitoring import get_monitor
from .resolver import SchemaResolver

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cache entry with TTL and the mtimes of the files it was built from."""

    data: object
    timestamp: float = field(default_factory=time.time)
    ttl: float = 3600.0
    etag: str = ""
    file_mtimes: Dict[str, float] = field(default_factory=dict)

    def is_expired(self) -> bool:
        return time.time() - self.timestamp > self.ttl

    def is_stale(self) -> bool:
        """True when any source file vanished or was modified after caching."""
        for path, mtime in self.file_mtimes.items():
            source = Path(path)
            if not source.exists():
                return True
            if source.stat().st_mtime > mtime:
                return True
        return False


class SchemaCache:
    """Simple in-memory cache for compiled schema models.

    Args:
        default_ttl: Seconds an entry stays valid unless ``set`` overrides it.
        enable_monitoring: Report lookups to :func:`~xsd_engine.monitoring.get_monitor`.
    """

    def __init__(self, default_ttl: float = 3600.0, enable_monitoring: bool = True):
        self.default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry] = {}
        self.enable_monitoring = enable_monitoring
        self._monitor = get_monitor() if enable_monitoring else None

    def __len__(self) -> int:
        return len(self._cache)

    def _make_key(self, *args) -> str:
        """Create cache key from arguments."""
        key_data = str(args).encode()
        return hashlib.md5(key_data).hexdigest()

    def get(self, key: str) -> Optional[object]:
        """Return the cached value, or None if absent, expired or stale."""
        start_time = time.time()
        entry = self._cache.get(key)

        if entry is None:
            if self._monitor:
                self._monitor.record_cache_miss(time.time() - start_time)
            return None

        if entry.is_expired() or entry.is_stale():
            del self._cache[key]
            logger.debug(f"Evicted cache entry {key}")
            if self._monitor:
                self._monitor.record_cache_miss(time.time() - start_time)
                self._monitor.record_cache_eviction()
                self._monitor.update_cache_size(len(self._cache))
            return None

        if self._monitor:
            self._monitor.record_cache_hit(time.time() - start_time)
        return entry.data

    def set(
        self,
        key: str,
        data: object,
        ttl: Optional[float] = None,
        files: Iterable[Path] = (),
    ) -> None:
        """Insert or replace a value.

        Args:
            key: Cache key.
            data: Stored as-is (models are immutable, nothing is copied).
            ttl: Time-to-live override in seconds.
            files: Source files whose modification invalidates the entry; their
                contents also feed the entry's etag.
        """
        digest = hashlib.md5()
        file_mtimes: Dict[str, float] = {}
        for path in files:
            path = Path(path)
            if path.is_file():
                file_mtimes[str(path)] = path.stat().st_mtime
                digest.update(path.read_bytes())

        self._cache[key] = CacheEntry(
            data=data,
            ttl=ttl if ttl is not None else self.default_ttl,
            etag=digest.hexdigest() if file_mtimes else "",
            file_mtimes=file_mtimes,
        )
        if self._monitor:
            self._monitor.update_cache_size(len(self._cache))

    def etag(self, key: str) -> str:
        """md5 of the entry's source files; empty for in-memory builds or unknown keys."""
        entry = self._cache.get(key)
        return entry.etag if entry is not None else ""

    def invalidate(self, key: str) -> None:
        """Remove specific entry from cache."""
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()
        if self._monitor:
            self._monitor.update_cache_size(0)

    def get_cache_stats(self) -> Dict[str, object]:
        return {
            "cache_size": len(self._cache),
            "default_ttl": self.default_ttl,
            "monitoring_enabled": self.enable_monitoring,
        }

    def check_file_staleness(self, key: str) -> bool:
        """Check whether the entry is missing or its source files changed."""
        entry = self._cache.get(key)
        if entry is None:
            return True
        return entry.is_stale()


_schema_cache: Optional[SchemaCache] = None


def get_cache_instance() -> SchemaCache:
    """Return the process-wide cache (TTL from ``XSD_ENGINE_CACHE_TTL``, default 3600s)."""
    global _schema_cache
    if _schema_cache is None:
        ttl = float(os.getenv("XSD_ENGINE_CACHE_TTL", "3600"))
        _schema_cache = SchemaCache(default_ttl=ttl)
    return _schema_cache


class CachedSchemaBuilder:
    """Builder wrapper that memoizes compiled models.

    Models built from files are keyed by entry locations and build settings
    and are rebuilt when any loaded document changes on disk. Models built
    from in-memory documents are keyed by the document contents.
    """

    def __init__(
        self,
        cache: Optional[SchemaCache] = None,
        config: Optional[BuildConfig] = None,
        loader: Optional[SchemaLoader] = None,
    ):
        self.cache = cache if cache is not None else get_cache_instance()
        self.config = config or BuildConfig()
        self.loader = loader

    def build(self, entry_locations: Sequence[str], force_refresh: bool = False) -> SchemaModel:
        """Resolve and compile ``entry_locations`` (cached).

        Args:
            entry_locations: Schema document paths or URLs.
            force_refresh: Skip the cache lookup and rebuild.

        Raises:
            SchemaError: Resolution or build failure; failures are not cached.
        """
        if isinstance(entry_locations, str):
            entry_locations = [entry_locations]
        key = self.model_key(entry_locations)
        return self._cached(key, entry_locations, self.loader, force_refresh)

    def model_key(self, entry_locations: Sequence[str]) -> str:
        return self.cache._make_key(
            "model", tuple(str(loc) for loc in entry_locations), str(self.config.__dict__)
        )

    def build_from_mapping(
        self,
        documents: Mapping[str, Union[str, bytes]],
        entry_locations: Sequence[str],
        force_refresh: bool = False,
    ) -> SchemaModel:
        """Compile in-memory documents served through a :class:`MappingLoader`."""
        if isinstance(entry_locations, str):
            entry_locations = [entry_locations]
        key = self.mapping_key(documents, entry_locations)
        return self._cached(key, entry_locations, MappingLoader(documents), force_refresh)

    def mapping_key(
        self, documents: Mapping[str, Union[str, bytes]], entry_locations: Sequence[str]
    ) -> str:
        return self.cache._make_key(
            "mapping",
            sorted((name, str(text)) for name, text in documents.items()),
            tuple(entry_locations),
            str(self.config.__dict__),
        )

    def _cached(
        self,
        key: str,
        entry_locations: Sequence[str],
        loader: Optional[SchemaLoader],
        force_refresh: bool,
    ) -> SchemaModel:
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached  # type: ignore[return-value]

        monitor = get_monitor()
        start = time.time()
        try:
            documents = SchemaResolver(loader).resolve(list(entry_locations))
            model = SchemaModelBuilder(self.config).build(documents)
        except Exception:
            monitor.record_operation("build", time.time() - start, success=False)
            raise
        monitor.record_operation("build", time.time() - start)
        logger.info(f"Built schema model for {list(entry_locations)} from {len(documents)} document(s)")

        files = [] if isinstance(loader, MappingLoader) else [Path(doc.location) for doc in documents]
        self.cache.set(key, model, files=files)
        return model

    def invalidate_all(self) -> int:
        """Drop every cached model; returns how many were dropped."""
        dropped = len(self.cache)
        self.cache.clear()
        logger.info(f"Cleared {dropped} cached schema model(s)")
        return dropped


def parse_config_key(config_key: Optional[str]) -> Dict[str, Union[int, bool]]:
    """Parse ``"max_depth=40,aggregate_errors=true"`` into typed keyword arguments.

    Unknown keys are ignored; ``max_*`` keys are integers, the rest booleans.
    """
    values: Dict[str, Union[int, bool]] = {}
    if not config_key:
        return values
    for pair in config_key.split(","):
        if "=" in pair:
            key, value = pair.split("=", 1)
            key = key.strip()
            value = value.strip()
            if key.startswith("max_"):
                values[key] = int(value)
            else:
                values[key] = value.lower() == "true"
    return values


@lru_cache(maxsize=4)
def get_cached_builder(config_key: Optional[str] = None) -> CachedSchemaBuilder:
    """Get or create a cached builder for a ``key=value`` settings string."""
    config = BuildConfig()
    for key, value in parse_config_key(config_key).items():
        if hasattr(config, key):
            setattr(config, key, value)
    return CachedSchemaBuilder(cache=get_cache_instance(), config=config)
