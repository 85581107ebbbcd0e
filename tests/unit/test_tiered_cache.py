"""
Unit tests for the two-level embedding cache.
"""

import pytest

from vector_resilience.cache.memory import MemoryEmbeddingCache
from vector_resilience.cache.persistent import DatabaseEmbeddingCache
from vector_resilience.cache.tiered import TieredEmbeddingCache


@pytest.fixture
def tiers(database, clock):
    fast = MemoryEmbeddingCache(max_entries=50, clock=clock)
    durable = DatabaseEmbeddingCache(database, table_name="tiered_cache", cleanup_probability=0.0, clock=clock)
    return fast, durable, TieredEmbeddingCache(fast, durable)


class TestTieredCache:
    """Tests for read-through and write-through behavior."""

    def test_write_reaches_both_tiers(self, tiers, make_hash):
        fast, durable, tiered = tiers
        key = make_hash("both")

        assert tiered.set(key, [1.0, 2.0]) is True

        assert fast.get(key) == [1.0, 2.0]
        assert durable.get(key) == [1.0, 2.0]

    def test_durable_hit_promoted_to_fast_tier(self, tiers, make_hash):
        """Test an entry only in the durable tier is copied up on read."""
        fast, durable, tiered = tiers
        key = make_hash("promote")
        durable.set(key, [3.0])

        assert tiered.get(key) == [3.0]
        assert fast.get(key) == [3.0]
        assert tiered.get_stats()["promotions"] == 1

    def test_get_multiple_promotes_remaining(self, tiers, make_hash):
        fast, durable, tiered = tiers
        a, b = make_hash("a"), make_hash("b")
        fast.set(a, [1.0])
        durable.set(b, [2.0])

        found = tiered.get_multiple([a, b, make_hash("c")])

        assert found == {a: [1.0], b: [2.0]}
        stats = tiered.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1

    def test_invalidate_removes_from_both(self, tiers, make_hash):
        fast, durable, tiered = tiers
        key = make_hash("gone")
        tiered.set(key, [1.0])

        assert tiered.invalidate(key) is True
        assert fast.get(key) is None
        assert durable.get(key) is None

    def test_stats_report_both_tiers(self, tiers, make_hash):
        _, _, tiered = tiers
        tiered.set(make_hash("x"), [1.0])

        stats = tiered.get_stats()

        assert stats["backend"] == "tiered"
        assert set(stats["tiers"]) == {"fast", "durable"}
        assert stats["total_entries"] == 1
