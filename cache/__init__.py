"""
Deckforge - Caching

In-process TTL cache with tag invalidation and memory-bounded LRU eviction.
"""

from cache.intelligent_cache import CacheStats, IntelligentCache
from cache.store import CacheEntry, TaggedLRUStore

__all__ = [
    "CacheEntry",
    "CacheStats",
    "IntelligentCache",
    "TaggedLRUStore",
]
