"""
Property-Based Tests for Runtime Invariants

Tests cache store bookkeeping, glob matching, metric keys, backoff and
job queue ordering.
"""
import fnmatch

import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from cache.store import CacheEntry, TaggedLRUStore, compile_glob
from core.config import LoggingConfig
from core.errors import CacheError
from jobs.models import Job, JobOptions, compute_backoff
from jobs.processor import BackgroundJobProcessor
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector, format_metric_key
from tests.property.strategies import (
    CACHE_TAGS,
    cache_key_strategy,
    entry_size_strategy,
    glob_pattern_strategy,
    glob_text_strategy,
    job_priority_strategy,
    tag_set_strategy,
    ttl_strategy,
)

pytestmark = pytest.mark.property

MAX_MEMORY = 200


class TaggedLRUStoreMachine(RuleBasedStateMachine):
    """Stateful testing for the tagged LRU store."""

    def __init__(self):
        super().__init__()
        self.now = 0.0
        self.store = TaggedLRUStore(max_memory=MAX_MEMORY, clock=lambda: self.now)

    @rule(
        key=cache_key_strategy(),
        size=entry_size_strategy(MAX_MEMORY),
        tags=tag_set_strategy(),
        ttl=ttl_strategy(),
    )
    def put(self, key, size, tags, ttl):
        """Insert an entry, evicting least recently used keys to fit."""
        entry = CacheEntry(
            value=None,
            ttl=ttl,
            created_at=self.now,
            last_accessed=self.now,
            tags=tags,
            size=size,
        )
        before = self.store.keys()

        if size > MAX_MEMORY:
            with pytest.raises(CacheError):
                self.store.put(key, entry)
            assert self.store.keys() == before
            return

        evicted = self.store.put(key, entry)

        others = [k for k in before if k != key]
        assert evicted == others[: len(evicted)]
        assert self.store.keys()[-1] == key

    @rule(key=cache_key_strategy())
    def get(self, key):
        """A successful read makes the key most recently used."""
        entry = self.store.get(key)
        if entry is not None:
            assert self.store.keys()[-1] == key
        else:
            assert key not in self.store.keys()

    @rule(key=cache_key_strategy())
    def delete(self, key):
        self.store.delete(key)
        assert key not in self.store.keys()

    @rule(tag=st.sampled_from(CACHE_TAGS))
    def invalidate_tag(self, tag):
        self.store.invalidate_tag(tag)
        assert all(tag not in entry.tags for entry in self.store.entries().values())

    @rule(pattern=glob_pattern_strategy())
    def delete_matching(self, pattern):
        self.store.delete_matching(pattern)
        assert not any(fnmatch.fnmatchcase(key, pattern) for key in self.store.keys())

    @rule(seconds=st.floats(min_value=0.1, max_value=30.0, allow_nan=False))
    def advance_clock(self, seconds):
        self.now += seconds

    @rule()
    def purge(self):
        self.store.purge_expired()
        assert not any(entry.is_expired(self.now) for entry in self.store.entries().values())

    @invariant()
    def memory_matches_entries(self):
        """Tracked memory equals the sum of live entry sizes."""
        entries = self.store.entries()
        assert self.store.memory_usage == sum(entry.size for entry in entries.values())

    @invariant()
    def memory_within_budget(self):
        assert 0 <= self.store.memory_usage <= MAX_MEMORY

    @invariant()
    def tag_index_is_inverse(self):
        """key in index[tag] exactly when tag in entry.tags."""
        entries = self.store.entries()
        index = self.store.tag_index()
        for tag, keys in index.items():
            assert keys
            for key in keys:
                assert tag in entries[key].tags
        for key, entry in entries.items():
            for tag in entry.tags:
                assert key in index[tag]


TestTaggedLRUStore = TaggedLRUStoreMachine.TestCase
TestTaggedLRUStore.settings = settings(max_examples=100, stateful_step_count=40)


class TestGlobMatching:
    """Property-based tests for key globs."""

    @given(glob_text_strategy(), glob_text_strategy())
    @settings(max_examples=300)
    def test_matches_fnmatch(self, pattern, key):
        """``*`` and ``?`` behave like shell globs; everything else is literal."""
        expected = fnmatch.fnmatchcase(key, pattern)
        assert bool(compile_glob(pattern).fullmatch(key)) is expected


class TestMetricKeys:
    """Property-based tests for series keys."""

    @given(
        st.dictionaries(
            st.text(alphabet="abcxyz_", min_size=1, max_size=5),
            st.text(alphabet="0123456789", max_size=3),
            max_size=5,
        )
    )
    @settings(max_examples=200)
    def test_key_independent_of_tag_order(self, tags):
        reversed_tags = dict(reversed(list(tags.items())))
        assert format_metric_key("m", tags) == format_metric_key("m", reversed_tags)


class TestBackoff:
    """Property-based tests for retry backoff."""

    @given(
        st.integers(min_value=1, max_value=60),
        st.floats(min_value=0.01, max_value=5.0, allow_nan=False),
        st.floats(min_value=1.0, max_value=120.0, allow_nan=False),
    )
    @settings(max_examples=200)
    def test_monotonic_and_capped(self, attempt, base, cap):
        delay = compute_backoff(attempt, base, cap)
        assert 0 < delay <= cap
        assert compute_backoff(attempt + 1, base, cap) >= delay


class TestQueueOrdering:
    """Property-based tests for job queue ordering."""

    @given(st.lists(job_priority_strategy(), min_size=1, max_size=30))
    @settings(max_examples=100)
    def test_dequeue_by_priority_then_arrival(self, priorities):
        logger = StructuredLogger(LoggingConfig(level="error", destination="console"))
        processor = BackgroundJobProcessor(logger, MetricsCollector(logger))
        for n, priority in enumerate(priorities):
            job = Job(id=f"job_{n}", type="t", data=n, options=JobOptions(priority=priority))
            processor._jobs[job.id] = job
            processor._enqueue(job)

        drained = []
        while True:
            job = processor._dequeue("t")
            if job is None:
                break
            drained.append((job.options.priority, job.data))

        expected = sorted(
            ((p, n) for n, p in enumerate(priorities)), key=lambda item: (-item[0], item[1])
        )
        assert drained == expected
