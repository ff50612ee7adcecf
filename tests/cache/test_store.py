"""
Tests for cache/store.py - Tagged LRU Store.

Covers:
- LRU ordering and memory-based eviction
- Lazy expiry and purge
- Tag index maintenance
- Glob matching
"""
import pytest

from cache.store import CacheEntry, TaggedLRUStore, compile_glob
from core.errors import CacheError


def make_entry(store, size, ttl=60.0, tags=()):
    now = store.clock()
    return CacheEntry(
        value="x" * size,
        ttl=ttl,
        created_at=now,
        last_accessed=now,
        tags=frozenset(tags),
        size=size,
    )


@pytest.fixture
def store(clock):
    return TaggedLRUStore(max_memory=100, clock=clock)


class TestEviction:
    """Tests for memory-bounded LRU eviction."""

    def test_put_tracks_memory(self, store):
        store.put("a", make_entry(store, 30))
        store.put("b", make_entry(store, 20))

        assert store.memory_usage == 50
        assert len(store) == 2

    def test_evicts_least_recently_used(self, store):
        for key in ("a", "b", "c", "d"):
            store.put(key, make_entry(store, 25))
        store.get("a")

        evicted = store.put("e", make_entry(store, 25))

        assert evicted == ["b"]
        assert store.keys() == ["c", "d", "a", "e"]
        assert store.memory_usage == 100
        assert store.evictions == 1

    def test_evicts_several_to_fit(self, store):
        for key in ("a", "b", "c", "d"):
            store.put(key, make_entry(store, 25))

        evicted = store.put("big", make_entry(store, 70))

        assert evicted == ["a", "b", "c"]
        assert store.memory_usage == 95

    def test_replace_does_not_double_count(self, store):
        store.put("a", make_entry(store, 40))
        store.put("a", make_entry(store, 10))

        assert store.memory_usage == 10
        assert len(store) == 1

    def test_oversize_entry_rejected_without_side_effects(self, store):
        store.put("a", make_entry(store, 50))

        with pytest.raises(CacheError):
            store.put("huge", make_entry(store, 101))

        assert store.keys() == ["a"]
        assert store.memory_usage == 50

    def test_peek_does_not_touch_order(self, store):
        store.put("a", make_entry(store, 10))
        store.put("b", make_entry(store, 10))

        entry = store.peek("a")

        assert entry.access_count == 0
        assert store.keys() == ["a", "b"]


class TestExpiry:
    """Tests for TTL handling."""

    def test_get_expired_entry_removes_it(self, store, clock):
        store.put("a", make_entry(store, 10, ttl=5))
        clock.advance(5.1)

        assert store.get("a") is None
        assert len(store) == 0
        assert store.memory_usage == 0
        assert store.expirations == 1

    def test_entry_live_until_ttl_elapses(self, store, clock):
        store.put("a", make_entry(store, 10, ttl=5))
        clock.advance(5)

        assert store.get("a") is not None

    def test_purge_expired(self, store, clock):
        store.put("short", make_entry(store, 10, ttl=1, tags=["t"]))
        store.put("long", make_entry(store, 10, ttl=100, tags=["t"]))
        clock.advance(2)

        assert store.purge_expired() == ["short"]
        assert store.keys() == ["long"]
        assert store.tag_index() == {"t": {"long"}}

    def test_remaining(self, store, clock):
        entry = make_entry(store, 10, ttl=10)
        clock.advance(4)

        assert entry.remaining(clock()) == pytest.approx(6)


class TestTags:
    """Tests for the tag index."""

    def test_index_tracks_entries(self, store):
        store.put("a", make_entry(store, 10, tags=["cards", "red"]))
        store.put("b", make_entry(store, 10, tags=["cards"]))

        assert store.tag_index() == {"cards": {"a", "b"}, "red": {"a"}}

    def test_invalidate_tag(self, store):
        store.put("a", make_entry(store, 10, tags=["cards"]))
        store.put("b", make_entry(store, 10, tags=["cards", "red"]))
        store.put("c", make_entry(store, 10, tags=["decks"]))

        assert store.invalidate_tag("cards") == 2
        assert store.keys() == ["c"]
        assert store.tag_index() == {"decks": {"c"}}
        assert store.memory_usage == 10

    def test_invalidate_unknown_tag(self, store):
        assert store.invalidate_tag("nothing") == 0

    def test_replacement_drops_old_tags(self, store):
        store.put("a", make_entry(store, 10, tags=["old"]))
        store.put("a", make_entry(store, 10, tags=["new"]))

        assert store.tag_index() == {"new": {"a"}}

    def test_eviction_cleans_index(self, store):
        store.put("a", make_entry(store, 60, tags=["cards"]))
        store.put("b", make_entry(store, 60))

        assert store.tag_index() == {}


class TestGlob:
    """Tests for glob matching."""

    @pytest.mark.parametrize(
        "pattern,key,expected",
        [
            ("user:*", "user:42", True),
            ("user:*", "user:", True),
            ("user:*", "deck:1", False),
            ("user:?", "user:1", True),
            ("user:?", "user:12", False),
            ("*:cards", "set:dom:cards", True),
            ("a.b", "a.b", True),
            ("a.b", "axb", False),
            ("[x]", "[x]", True),
        ],
    )
    def test_compile_glob(self, pattern, key, expected):
        assert bool(compile_glob(pattern).fullmatch(key)) is expected

    def test_delete_matching(self, store):
        for key in ("user:1", "user:2", "deck:1"):
            store.put(key, make_entry(store, 10))

        assert store.delete_matching("user:*") == 2
        assert store.keys() == ["deck:1"]

    def test_clear(self, store):
        store.put("a", make_entry(store, 10, tags=["t"]))

        assert store.clear() == 1
        assert store.memory_usage == 0
        assert store.tag_index() == {}
