"""
Deckforge - Tagged LRU Store

The synchronous core behind IntelligentCache:
- O(1) get, put and eviction using OrderedDict (kept in LRU order)
- Memory-based size limiting with strict least-recently-used eviction
- TTL-based lazy expiration plus explicit purge
- Tag index kept as the exact inverse of every live entry's tags
- Thread-safe operations

Invariants:
    memory_usage == sum(entry.size for every live entry)
    key in tag_index[tag]  <=>  tag in entries[key].tags
"""

from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Pattern,
    Set,
)

from core.errors import CacheError

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """Cache entry with metadata for expiry and eviction decisions."""

    value: Any
    ttl: float
    created_at: float
    last_accessed: float
    access_count: int = 0
    tags: FrozenSet[str] = frozenset()
    compressed: bool = False
    serialized: bool = True
    size: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


def compile_glob(pattern: str) -> Pattern[str]:
    """Translate a key glob (``*`` and ``?`` only) into a regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


class TaggedLRUStore:
    """
    Memory-bounded key/value store with TTL and tag index.

    Usage:
        store = TaggedLRUStore(max_memory=1024 * 1024)
        now = store.clock()
        store.put("deck:1", CacheEntry(value="{}", ttl=60, created_at=now,
                                       last_accessed=now, size=2))
        entry = store.get("deck:1")
    """

    def __init__(self, max_memory: int, clock: Clock = time.monotonic):
        self.max_memory = max_memory
        self.clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self._memory_usage = 0
        self._lock = threading.RLock()

        self.evictions = 0
        self.expirations = 0

    @property
    def memory_usage(self) -> int:
        return self._memory_usage

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        """Keys in LRU order, least recently used first."""
        with self._lock:
            return list(self._entries.keys())

    def tag_index(self) -> Dict[str, Set[str]]:
        with self._lock:
            return {tag: set(keys) for tag, keys in self._tag_index.items()}

    def entries(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return dict(self._entries)

    # -------------------------------------------------------------------------
    # Internal mutation helpers. Must be called with lock held.
    # -------------------------------------------------------------------------

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        self._memory_usage -= entry.size
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return entry

    def _insert(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._memory_usage += entry.size
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

    def _evict_until_fits(self, new_size: int) -> List[str]:
        evicted: List[str] = []
        while self._entries and self._memory_usage + new_size > self.max_memory:
            key = next(iter(self._entries))
            self._remove(key)
            self.evictions += 1
            evicted.append(key)
        return evicted

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Return the live entry for ``key`` and mark it most recently used.

        Expired entries are removed and reported as absent.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            now = self.clock()
            if entry.is_expired(now):
                self._remove(key)
                self.expirations += 1
                return None

            self._entries.move_to_end(key)
            entry.last_accessed = now
            entry.access_count += 1
            return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry without touching access bookkeeping."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self.clock()):
                return None
            return entry

    def put(self, key: str, entry: CacheEntry) -> List[str]:
        """
        Insert ``entry`` under ``key``, replacing any previous entry.

        Returns the keys evicted to make room. An entry larger than the
        whole memory budget is rejected before anything is touched.
        """
        if entry.size > self.max_memory:
            raise CacheError(
                f"Entry of {entry.size} bytes exceeds cache memory limit "
                f"of {self.max_memory} bytes",
                operation="set",
            )

        with self._lock:
            self._remove(key)
            evicted = self._evict_until_fits(entry.size)
            self._insert(key, entry)
            return evicted

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._tag_index.clear()
            self._memory_usage = 0
            return count

    def delete_matching(self, pattern: str) -> int:
        regex = compile_glob(pattern)
        with self._lock:
            matched = [key for key in self._entries if regex.fullmatch(key)]
            for key in matched:
                self._remove(key)
            return len(matched)

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            keys = list(self._tag_index.get(tag, ()))
            for key in keys:
                self._remove(key)
            return len(keys)

    def purge_expired(self) -> List[str]:
        with self._lock:
            now = self.clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            self.expirations += len(expired)
            return expired
