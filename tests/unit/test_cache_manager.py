"""
Unit tests for the text-level embedding cache manager.
"""

from unittest.mock import MagicMock

import pytest

from vector_resilience.cache.manager import (
    EmbeddingCacheManager,
    create_cache_backend,
    generate_cache_key,
)
from vector_resilience.cache.memory import MemoryEmbeddingCache
from vector_resilience.cache.tiered import TieredEmbeddingCache
from vector_resilience.core.exceptions import CacheDegradedError, ConfigurationError, ValidationError
from vector_resilience.schemas.classification import ErrorKind


class TestCacheKeys:
    """Tests for cache key generation."""

    def test_key_is_sha256_hex(self):
        key = generate_cache_key("hello world")

        assert len(key) == 64
        assert all(c in "0123456789abcdef" for c in key)

    def test_whitespace_variants_share_key(self):
        """Test cosmetic whitespace differences map to the same key."""
        assert generate_cache_key("hello   world\n") == generate_cache_key("hello world")

    def test_metadata_changes_key(self):
        """Test a different model never reuses another model's key."""
        base = generate_cache_key("text", {"model": "a"})

        assert base != generate_cache_key("text", {"model": "b"})
        assert base != generate_cache_key("text")

    def test_metadata_order_irrelevant(self):
        assert generate_cache_key("t", {"a": 1, "b": 2}) == generate_cache_key("t", {"b": 2, "a": 1})

    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            generate_cache_key("   ")


class TestCacheManager:
    """Tests for the manager facade."""

    def test_cache_and_read_back(self, cache_manager):
        assert cache_manager.cache_embedding("some text", [0.5, 0.5]) is True
        assert cache_manager.get_cached_embedding("some text") == [0.5, 0.5]

    def test_disabled_manager_never_caches(self, memory_cache):
        """Test a disabled manager always misses and stores nothing."""
        manager = EmbeddingCacheManager(memory_cache, enabled=False)

        assert manager.cache_embedding("text", [1.0]) is False
        assert manager.get_cached_embedding("text") is None
        assert memory_cache.get_stats()["total_entries"] == 0

    def test_invalid_embedding_not_cached(self, cache_manager):
        """Test validation failures are reported as a failed write."""
        assert cache_manager.cache_embedding("text", []) is False

    def test_batch_lookup_by_position(self, cache_manager):
        """Test batch results are keyed by input position, duplicates included."""
        cache_manager.cache_embeddings_batch(["a", "b"], [[1.0], [2.0]])

        found = cache_manager.get_cached_embeddings_batch(["a", "x", "b", "a", ""])

        assert found == {0: [1.0], 2: [2.0], 3: [1.0]}

    def test_batch_skips_missing_embeddings(self, cache_manager):
        assert cache_manager.cache_embeddings_batch(["a", "b"], [[1.0], None]) is True

        assert cache_manager.get_cached_embedding("b") is None

    def test_batch_length_mismatch_rejected(self, cache_manager):
        assert cache_manager.cache_embeddings_batch(["a", "b"], [[1.0]]) is False

    def test_degraded_read_is_a_miss(self, tracker):
        """Test a failing backend degrades to a miss and records the issue."""
        backend = MagicMock()
        backend.get.side_effect = CacheDegradedError("table unavailable")
        manager = EmbeddingCacheManager(backend, enabled=True, issue_recorder=tracker.record)

        assert manager.get_cached_embedding("text") is None

        issues = tracker.active_issues()
        assert [issue.kind for issue in issues] == [ErrorKind.CACHE_DEGRADED]

    def test_invalidate_by_model_clears_cache(self, cache_manager):
        cache_manager.cache_embedding("text", [1.0])

        assert cache_manager.invalidate_by_metadata({"model": "new"}) == 1
        assert cache_manager.get_cached_embedding("text") is None

    def test_invalidate_by_other_metadata_is_noop(self, cache_manager):
        assert cache_manager.invalidate_by_metadata({"tenant": "x"}) == 0

    def test_invalidate_single_entry(self, cache_manager):
        cache_manager.cache_embedding("keep", [1.0])
        cache_manager.cache_embedding("drop", [0.5])

        assert cache_manager.invalidate_cache("drop") is True
        assert cache_manager.get_cached_embedding("drop") is None
        assert cache_manager.get_cached_embedding("keep") == [1.0]
        assert cache_manager.invalidate_cache("") is False


class TestCacheStatistics:
    """Tests for statistics, export and maintenance."""

    def test_statistics_include_savings(self, cache_manager):
        cache_manager.cache_embedding("text", [1.0])
        cache_manager.get_cached_embedding("text")
        cache_manager.get_cached_embedding("other")

        stats = cache_manager.get_cache_statistics()

        assert stats["total_requests"] == 2
        assert stats["hit_rate_percentage"] == 50.0
        assert stats["miss_rate_percentage"] == 50.0
        assert stats["estimated_tokens_saved"] == 125
        assert stats["enabled"] is True

    def test_export_shape(self, cache_manager):
        """Test the export carries exactly the admin tooling fields."""
        export = cache_manager.export_statistics()

        assert set(export) == {"hits", "misses", "hit_rate", "total_entries", "cache_size", "estimated_savings"}

    def test_warmup_caches_new_items_only(self, cache_manager):
        cache_manager.cache_embedding("known", [1.0])
        generator = MagicMock(side_effect=lambda text: [2.0])

        results = cache_manager.warmup_cache(["known", "new", ""], generator)

        assert results == {"cached": 1, "failed": 0, "skipped": 2}
        generator.assert_called_once_with("new")

    def test_warmup_counts_generator_failures(self, cache_manager):
        generator = MagicMock(side_effect=RuntimeError("provider down"))

        results = cache_manager.warmup_cache(["a", "b"], generator)

        assert results["failed"] == 2

    def test_clear_by_age_requires_a_day(self, cache_manager):
        with pytest.raises(ValidationError):
            cache_manager.clear_by_age(0)

    def test_clear_by_age_in_days(self, cache_manager, clock):
        cache_manager.cache_embedding("old", [1.0], ttl=0)
        clock.advance(3 * 86400)

        assert cache_manager.clear_by_age(2) == 1

    def test_optimize_includes_statistics(self, cache_manager):
        results = cache_manager.optimize()

        assert results["success"] is True
        assert "statistics" in results


class TestCacheBackendFactory:
    """Tests for backend selection."""

    def test_memory_backend(self):
        assert isinstance(create_cache_backend("memory"), MemoryEmbeddingCache)

    def test_tiered_backend(self, database):
        assert isinstance(create_cache_backend("tiered", database=database), TieredEmbeddingCache)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            create_cache_backend("redis")
