"""
Deckforge - Intelligent Cache

In-process cache service with TTL, tag-based invalidation, memory-bounded
LRU eviction and transparent serialization/compression.

Features:
- Lazy expiry on read plus a periodic background sweep
- Tag index for bulk invalidation
- Glob-style bulk clear (``*`` and ``?``)
- zlib compression above a configurable size threshold
- Hit/miss statistics and metrics

Reads never raise for missing or expired keys; writes propagate
serialization failures as CacheError.

Usage:
    cache = IntelligentCache(logger, metrics, CacheConfig(max_memory=50 * 1024 * 1024))
    await cache.set("card:lotus", {"name": "Black Lotus"}, ttl=600, tags=["cards"])
    card = await cache.get("card:lotus")
    await cache.invalidate_tag("cards")
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
)

from cache.codec import decode, encode
from cache.store import CacheEntry, Clock, TaggedLRUStore
from core.config import CacheConfig
from core.errors import CacheError, ValidationError
from core.types import BaseService, HealthState, ServiceHealthStatus
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector

# Memory fraction above which health reports degraded
DEGRADED_MEMORY_RATIO = 0.9


@dataclass
class CacheStats:
    """Statistics for cache monitoring."""

    hits: int = 0
    misses: int = 0
    memory_usage: int = 0
    key_count: int = 0
    evictions: int = 0
    expirations: int = 0
    max_memory: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "memory_usage": self.memory_usage,
            "key_count": self.key_count,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "max_memory": self.max_memory,
        }


class IntelligentCache(BaseService):
    """TTL + tag-indexed cache service with memory-bounded LRU eviction."""

    name = "CacheService"

    def __init__(
        self,
        logger: StructuredLogger,
        metrics: MetricsCollector,
        config: Optional[CacheConfig] = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self.config.validate()
        self._logger = logger.child({"component": "cache"})
        self._metrics = metrics
        self._store = TaggedLRUStore(self.config.max_memory, clock)
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    @property
    def store(self) -> TaggedLRUStore:
        return self._store

    def _validate_key(self, key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValidationError("Cache key must be a non-empty string", field="key")
        if len(key) > self.config.max_key_length:
            raise ValidationError(
                f"Cache key exceeds maximum length of {self.config.max_key_length}",
                field="key",
            )

    def _record_gauges(self) -> None:
        self._metrics.gauge("cache.memory_usage", self._store.memory_usage)
        self._metrics.gauge("cache.keys", len(self._store))
        total = self._hits + self._misses
        self._metrics.gauge("cache.hit_rate", self._hits / total if total else 0.0)

    def _miss(self, key: str) -> None:
        self._misses += 1
        self._metrics.increment("cache.miss")
        self._logger.debug("Cache miss", key=key)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        """Return the cached value, or None when absent or expired."""
        self._validate_key(key)
        entry = self._store.get(key)
        if entry is None:
            self._miss(key)
            return None

        try:
            value = decode(entry.value, entry.serialized, entry.compressed)
        except CacheError as e:
            self._logger.error("Dropping undecodable cache entry", error=e, key=key)
            self._store.delete(key)
            self._miss(key)
            return None

        self._hits += 1
        self._metrics.increment("cache.hit")
        return value

    async def get_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: await self.get(key) for key in keys}

    async def exists(self, key: str) -> bool:
        self._validate_key(key)
        return self._store.peek(key) is not None

    async def ttl(self, key: str) -> int:
        """Whole seconds until expiry, or -2 when absent or expired."""
        self._validate_key(key)
        entry = self._store.peek(key)
        if entry is None:
            return -2
        return int(entry.remaining(self._store.clock()))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        compress: bool = True,
        serialize: bool = True,
    ) -> None:
        """
        Store ``value`` under ``key``.

        Args:
            ttl: Seconds to live; defaults to ``config.default_ttl``
            tags: Labels for bulk invalidation
            compress: Compress serialized payloads above the threshold
            serialize: JSON-serialize the value (reads return a copy)

        Raises:
            ValidationError: Invalid key or ttl
            CacheError: Value cannot be serialized or exceeds the memory limit
        """
        self._validate_key(key)
        if ttl is None:
            ttl = self.config.default_ttl
        if ttl <= 0:
            raise ValidationError("TTL must be positive", field="ttl")

        payload, serialized, compressed, size = encode(
            value,
            serialize_value=serialize,
            compress_value=compress,
            compression_threshold=self.config.compression_threshold,
        )

        now = self._store.clock()
        entry = CacheEntry(
            value=payload,
            ttl=float(ttl),
            created_at=now,
            last_accessed=now,
            tags=frozenset(tags or ()),
            compressed=compressed,
            serialized=serialized,
            size=size,
        )
        evicted = self._store.put(key, entry)

        self._metrics.increment("cache.set")
        if evicted:
            self._metrics.increment("cache.evictions", len(evicted))
            self._logger.debug("Evicted cache entries", count=len(evicted), keys=evicted[:10])
        self._record_gauges()

    async def set_multi(
        self,
        entries: Mapping[str, Any],
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        compress: bool = True,
        serialize: bool = True,
    ) -> None:
        tag_list: List[str] = list(tags or ())
        for key, value in entries.items():
            await self.set(key, value, ttl=ttl, tags=tag_list, compress=compress, serialize=serialize)

    async def delete(self, key: str) -> bool:
        self._validate_key(key)
        deleted = self._store.delete(key)
        if deleted:
            self._metrics.increment("cache.delete")
            self._record_gauges()
        return deleted

    async def clear(self, pattern: Optional[str] = None) -> int:
        """Remove every entry, or only keys matching a ``*``/``?`` glob."""
        if pattern is None:
            count = self._store.clear()
        else:
            count = self._store.delete_matching(pattern)
        self._metrics.increment("cache.clear", tags={"pattern": pattern or "*"})
        self._logger.info("Cache cleared", pattern=pattern, count=count)
        self._record_gauges()
        return count

    async def invalidate_tag(self, tag: str) -> int:
        count = self._store.invalidate_tag(tag)
        self._metrics.increment("cache.tag_invalidation", tags={"tag": tag})
        self._logger.debug("Tag invalidated", tag=tag, count=count)
        self._record_gauges()
        return count

    async def cleanup(self) -> int:
        """Delete every expired entry; returns how many were removed."""
        expired = self._store.purge_expired()
        if expired:
            self._metrics.increment("cache.expirations", len(expired))
            self._logger.debug("Expired cache entries swept", count=len(expired))
            self._record_gauges()
        return len(expired)

    def get_stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            memory_usage=self._store.memory_usage,
            key_count=len(self._store),
            evictions=self._store.evictions,
            expirations=self._store.expirations,
            max_memory=self.config.max_memory,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.cleanup()
            except Exception as e:
                self._logger.error("Cache sweep failed", error=e)

    async def initialize(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._sweep_loop())
        self._logger.info(
            "Cache initialized",
            max_memory=self.config.max_memory,
            default_ttl=self.config.default_ttl,
        )

    async def shutdown(self) -> None:
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        self._store.clear()
        self._logger.info("Cache shut down")

    async def health_check(self) -> ServiceHealthStatus:
        stats = self.get_stats()
        status = HealthState.HEALTHY
        message = None
        if stats.memory_usage > self.config.max_memory * DEGRADED_MEMORY_RATIO:
            status = HealthState.DEGRADED
            message = "Cache memory usage above 90% of limit"
        return ServiceHealthStatus(
            status=status,
            message=message,
            metrics={
                "hit_rate": stats.hit_rate,
                "key_count": stats.key_count,
                "memory_usage": stats.memory_usage,
            },
        )
