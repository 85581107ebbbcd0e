"""
Unit tests for the vector index manager.

Storage runs on in-memory SQLite through the encoded dialect; pgvector
specific SQL is covered by compile-only tests in test_hybrid_query.
"""

import math
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from vector_resilience.core.exceptions import (
    DatabaseConnectionError,
    EmbeddingProviderError,
    InvalidIndexConfigurationError,
    MemoryExhaustedError,
    NotFoundError,
    TransactionFailedError,
    UnsupportedDistanceMetricError,
    VectorDimensionError,
    VectorIndexCorruptedError,
)
from vector_resilience.core.reliability import PerformanceMonitor
from vector_resilience.models.vector_record import IndexDescriptor, VectorRecord
from vector_resilience.schemas.classification import ErrorKind, FallbackStrategy
from vector_resilience.schemas.health import HealthStatus
from vector_resilience.services.index_health import IndexHealthEvaluator
from vector_resilience.services.resilient_embedding import ResilientEmbeddingService

DIMENSION = 8


def make_records(count, dimension=DIMENSION):
    return [
        VectorRecord(f"item-{i:05d}", [float(i % 5 + 1)] + [1.0] * (dimension - 1), f"text {i}")
        for i in range(count)
    ]


def connection_refused(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("could not connect to server: Connection refused"))


def failing_service(provider, status_code):
    """Embedding service whose provider always fails with ``status_code``."""
    provider.generate_embeddings.side_effect = EmbeddingProviderError("mock", "upstream failure", status_code)
    return ResilientEmbeddingService(
        provider,
        monitor=PerformanceMonitor(),
        sleep=lambda seconds: None,
        max_retries=1,
        individual_delay_ms=0,
        timeout=5.0
    )


class TestDistanceAndValidation:
    """Tests for distance math and configuration validation."""

    def test_orthogonal_distances(self, index_manager, basis):
        """Test cosine, l2 and inner product for orthogonal unit vectors."""
        a, b = basis(0), basis(1)

        assert index_manager.calculate_distance(a, b, "cosine") == pytest.approx(1.0)
        assert index_manager.calculate_distance(a, b, "l2") == pytest.approx(math.sqrt(2))
        assert index_manager.calculate_distance(a, b, "inner_product") == pytest.approx(0.0)

    def test_identical_vectors_have_zero_cosine_distance(self, index_manager, basis):
        assert index_manager.calculate_distance(basis(2), basis(2)) == pytest.approx(0.0)

    def test_zero_vector_cosine_distance(self, index_manager, basis):
        assert index_manager.calculate_distance([0.0] * DIMENSION, basis(0)) == 1.0

    def test_unsupported_metric(self, index_manager, basis):
        with pytest.raises(UnsupportedDistanceMetricError):
            index_manager.calculate_distance(basis(0), basis(1), "manhattan")
        with pytest.raises(UnsupportedDistanceMetricError):
            index_manager.validate_index_configuration({"index_name": "x", "metric": "manhattan"})

    def test_distance_dimension_mismatch(self, index_manager):
        with pytest.raises(VectorDimensionError):
            index_manager.calculate_distance([1.0, 0.0], [1.0, 0.0, 0.0])

    @pytest.mark.parametrize("config", [
        {"index_name": ""},
        {"index_name": "x", "method": "annoy"},
        {"index_name": "x", "dimension": 0},
        {"index_name": "x", "method": "ivfflat", "method_params": {"lists": 0}},
        {"index_name": "x", "method": "hnsw", "method_params": {"m": 16, "ef_construction": 20}},
    ])
    def test_invalid_index_configuration(self, index_manager, config):
        with pytest.raises(InvalidIndexConfigurationError):
            index_manager.validate_index_configuration(config)

    def test_valid_configuration(self, index_manager, descriptor):
        assert index_manager.validate_index_configuration(descriptor) is True

    def test_vector_dimension_check(self, index_manager):
        with pytest.raises(VectorDimensionError):
            index_manager.validate_vector_dimensions([1.0, 2.0], DIMENSION)


class TestIndexLifecycle:
    """Tests for create, insert, update and delete."""

    def test_create_is_idempotent(self, index_manager, descriptor, database):
        assert index_manager.create_vector_index(descriptor) is True
        assert index_manager.create_vector_index(descriptor) is True
        assert database.table_exists(descriptor.table_name)

    def test_operations_on_missing_index(self, index_manager, basis):
        with pytest.raises(NotFoundError):
            index_manager.search_similar_vectors(IndexDescriptor("missing", dimension=DIMENSION), basis(0))

    def test_insert_in_chunks(self, index_manager, created_index):
        """Test 2500 records with a batch size of 1000 write three chunks."""
        with patch.object(index_manager, "_insert_chunk", side_effect=lambda table, rows: len(rows)) as chunk:
            inserted = index_manager.insert_vectors(created_index, make_records(2500))

        assert inserted == 2500
        assert chunk.call_count == 3
        assert [len(call.args[1]) for call in chunk.call_args_list] == [1000, 1000, 500]

    def test_insert_is_an_upsert(self, index_manager, created_index, basis):
        index_manager.insert_vectors(created_index, [VectorRecord("a", basis(0), "first")])
        index_manager.insert_vectors(created_index, [VectorRecord("a", basis(1), "second")])

        coverage = index_manager.get_embedding_coverage(created_index)
        results = index_manager.search_similar_vectors(created_index, basis(1), similarity_threshold=0.9)

        assert coverage["total_items"] == 1
        assert results[0]["text_content"] == "second"

    def test_insert_rejects_wrong_dimension(self, index_manager, created_index):
        with pytest.raises(VectorDimensionError):
            index_manager.insert_vectors(created_index, [VectorRecord("a", [1.0, 2.0])])

    def test_deadlock_retried(self, index_manager, created_index):
        """Test a chunk hitting a deadlock is retried and then succeeds."""
        deadlock = OperationalError("INSERT", {}, Exception("deadlock detected"))

        with patch.object(index_manager, "_insert_chunk", side_effect=[deadlock, 3]) as chunk:
            inserted = index_manager.insert_vectors(created_index, make_records(3))

        assert inserted == 3
        assert chunk.call_count == 2

    def test_persistent_deadlock_classified(self, index_manager, created_index, tracker):
        deadlock = OperationalError("INSERT", {}, Exception("deadlock detected"))

        with patch.object(index_manager, "_insert_chunk", side_effect=deadlock) as chunk:
            with pytest.raises(TransactionFailedError):
                index_manager.insert_vectors(created_index, make_records(3))

        assert chunk.call_count == 1 + index_manager.deadlock_retries
        assert ErrorKind.TRANSACTION_FAILED in [issue.kind for issue in tracker.active_issues()]

    def test_memory_error_becomes_memory_exhausted(self, index_manager, created_index):
        with patch.object(index_manager, "_insert_chunk", side_effect=MemoryError()):
            with pytest.raises(MemoryExhaustedError):
                index_manager.insert_vectors(created_index, make_records(3))

    def test_storage_out_of_memory_becomes_memory_exhausted(self, index_manager, created_index, tracker):
        """Test a server-side memory failure asks for smaller batches rather than reporting an outage."""
        out_of_memory = OperationalError("INSERT", {}, Exception("out of memory"))

        with patch.object(index_manager, "_insert_chunk", side_effect=out_of_memory):
            with pytest.raises(MemoryExhaustedError) as exc_info:
                index_manager.insert_vectors(created_index, make_records(3))

        assert exc_info.value.classified.fallback_strategy == FallbackStrategy.BATCH_SIZE_REDUCTION
        assert [issue.kind for issue in tracker.active_issues()] == [ErrorKind.MEMORY_EXHAUSTED]

    def test_memory_limit_checked_before_insert(self, index_manager, created_index):
        index_manager.memory.enforce_memory_limits.side_effect = MemoryExhaustedError("low memory")

        with pytest.raises(MemoryExhaustedError):
            index_manager.insert_vectors(created_index, make_records(3))

    def test_update_and_delete(self, index_manager, created_index, basis):
        assert index_manager.update_vector(created_index, "a", basis(0), "alpha") is True
        assert index_manager.delete_vector(created_index, "a") is True
        assert index_manager.delete_vector(created_index, "a") is False

    def test_delete_many(self, index_manager, created_index):
        index_manager.insert_vectors(created_index, make_records(5))

        assert index_manager.delete_vectors(created_index, ["item-00000", "item-00001", "nope"]) == 2

    def test_drop_index(self, index_manager, created_index, database):
        assert index_manager.drop_vector_index(created_index) is True
        assert not database.table_exists(created_index.table_name)

    def test_reset_dialect_keeps_existing_tables(self, index_manager, created_index):
        index_manager.insert_vectors(created_index, make_records(2))
        first = index_manager.dialect

        index_manager.reset_dialect()

        assert index_manager.dialect is not first
        assert index_manager.get_index_statistics(created_index)["total_vectors"] == 2


class TestSimilaritySearch:
    """Tests for ranked search on the encoded dialect."""

    @pytest.fixture
    def populated(self, index_manager, created_index, basis):
        diagonal = [1.0, 1.0] + [0.0] * (DIMENSION - 2)
        index_manager.insert_vectors(created_index, [
            VectorRecord("exact", basis(0), "exact match"),
            VectorRecord("diagonal", diagonal, "partial match"),
            VectorRecord("orthogonal", basis(1), "no match"),
            VectorRecord("text-only", None, "no vector"),
        ])
        return created_index

    def test_results_ordered_by_similarity(self, index_manager, populated, basis):
        results = index_manager.search_similar_vectors(populated, basis(0), limit=10, similarity_threshold=0.0)

        assert [r["item_id"] for r in results] == ["exact", "diagonal", "orthogonal"]
        assert results[0]["similarity"] == pytest.approx(1.0)
        assert results[1]["similarity"] == pytest.approx(1 / math.sqrt(2))

    def test_threshold_filters(self, index_manager, populated, basis):
        results = index_manager.search_similar_vectors(populated, basis(0), similarity_threshold=0.5)

        assert [r["item_id"] for r in results] == ["exact", "diagonal"]

    def test_limit_applied(self, index_manager, populated, basis):
        results = index_manager.search_similar_vectors(populated, basis(0), limit=1, similarity_threshold=0.0)

        assert [r["item_id"] for r in results] == ["exact"]

    def test_no_match_is_empty_list(self, index_manager, populated, basis):
        assert index_manager.search_similar_vectors(populated, basis(5), similarity_threshold=0.5) == []

    def test_database_failure_raises_connection_error(self, index_manager, populated, database, tracker, basis):
        """Test an unreachable database is distinguishable from no matches."""
        with patch.object(database, "begin", side_effect=connection_refused):
            with pytest.raises(DatabaseConnectionError):
                index_manager.search_similar_vectors(populated, basis(0))

        assert ErrorKind.DATABASE_CONNECTION in [issue.kind for issue in tracker.active_issues()]

    def test_open_database_breaker_reads_as_connection_error(self, index_manager, populated, database, basis):
        with patch.object(database._circuit_breaker, "is_available", return_value=False):
            with pytest.raises(DatabaseConnectionError) as exc_info:
                index_manager.search_similar_vectors(populated, basis(0))

        assert exc_info.value.classified.kind == ErrorKind.DATABASE_CONNECTION
        assert exc_info.value.classified.fallback_strategy == FallbackStrategy.TEXT_SEARCH_ONLY

    @pytest.mark.parametrize("chunk_size", [1, 1000])
    def test_ties_at_limit_keep_smallest_ids(self, index_manager, created_index, basis, chunk_size):
        """Test equal scores are cut at the limit in item id order."""
        index_manager.insert_vectors(created_index, [
            VectorRecord(item_id, basis(3), f"text {item_id}") for item_id in ("c", "a", "d", "b")
        ])
        index_manager.dialect.scan_chunk_size = chunk_size

        results = index_manager.search_similar_vectors(created_index, basis(3), limit=2, similarity_threshold=0.0)

        assert [r["item_id"] for r in results] == ["a", "b"]

    def test_scan_in_small_chunks(self, index_manager, populated, basis):
        index_manager.dialect.scan_chunk_size = 1

        results = index_manager.search_similar_vectors(populated, basis(0), similarity_threshold=0.0)

        assert len(results) == 3

    def test_statistics_after_search(self, index_manager, populated, basis):
        index_manager.search_similar_vectors(populated, basis(0), similarity_threshold=0.5)
        index_manager.search_similar_vectors(populated, basis(5), similarity_threshold=0.5)

        stats = index_manager.get_index_statistics(populated)
        metrics = index_manager.get_performance_metrics(populated)

        assert stats["dialect"] == "encoded"
        assert stats["total_vectors"] == 4
        assert stats["missing_embeddings"] == 1
        assert stats["coverage_percent"] == 75.0
        assert stats["search_count"] == 2
        assert stats["storage_bytes"] > 0
        assert metrics["searches"] == 2
        assert metrics["empty_result_rate"] == 50.0
        assert metrics["search"]["operation_count"] == 2


class TestCalibration:
    """Tests for similarity threshold calibration."""

    def test_no_scores_returns_default(self, index_manager, created_index, basis):
        assert index_manager.calibrate_similarity_threshold(created_index, [basis(0)]) == index_manager.default_threshold

    def test_perfect_matches_clamped(self, index_manager, created_index, basis):
        index_manager.insert_vectors(created_index, [VectorRecord("a", basis(0)), VectorRecord("b", basis(1))])

        threshold = index_manager.calibrate_similarity_threshold(created_index, [basis(0), basis(1)], top_k=1)

        assert threshold == 0.99

    def test_low_scores_clamped(self, index_manager, created_index, basis):
        index_manager.insert_vectors(created_index, [VectorRecord("a", basis(0))])

        threshold = index_manager.calibrate_similarity_threshold(created_index, [basis(3)])

        assert threshold == 0.01

    def test_text_queries_use_embedding_service(self, index_manager, created_index):
        index_manager.index_items(created_index, {"1": "rebel base", "2": "imperial fleet"})

        threshold = index_manager.calibrate_similarity_threshold(created_index, ["rebel base"], top_k=1)

        assert threshold == 0.99


class TestIndexHealth:
    """Tests for health evaluation, checks and rebuilds."""

    def test_twenty_percent_corruption_is_critical(self):
        health = IndexHealthEvaluator().evaluate("articles", 10000, 2000)

        assert health.status == HealthStatus.CRITICAL
        assert health.needs_rebuild is True
        assert "Rebuild the index immediately" in health.recommendations

    def test_half_percent_corruption_is_healthy(self):
        health = IndexHealthEvaluator().evaluate("articles", 10000, 50)

        assert health.status == HealthStatus.HEALTHY
        assert health.corruption_ratio == 0.005

    def test_warning_corruption_is_degraded(self):
        assert IndexHealthEvaluator().evaluate("articles", 100, 7).status == HealthStatus.DEGRADED

    def test_empty_index(self):
        health = IndexHealthEvaluator().evaluate("articles", 0, 0)

        assert health.status == HealthStatus.HEALTHY
        assert health.issues == ["Index is empty"]

    def test_missing_embeddings_are_not_corruption(self):
        health = IndexHealthEvaluator().evaluate("articles", 100, 0, missing_count=40)

        assert health.status == HealthStatus.HEALTHY
        assert "40 items have no embedding" in health.issues

    def test_corrupted_vectors_detected_and_rebuilt(self, index_manager, created_index, database, tracker):
        """Test unreadable vectors make the index critical until a rebuild repairs them."""
        index_manager.index_items(created_index, {f"{i}": f"document number {i}" for i in range(10)})
        table = index_manager._table(created_index)
        with database.begin() as conn:
            conn.execute(
                table.update().where(table.c.item_id.in_(["0", "1"])).values(embedding=b"r\x00\x01\x02")
            )

        health = index_manager.check_index_health(created_index)

        assert health.status == HealthStatus.CRITICAL
        assert health.corrupted_count == 2
        assert ErrorKind.VECTOR_INDEX_CORRUPTED in [issue.kind for issue in tracker.active_issues()]

        assert index_manager.rebuild_index(created_index) is True

        repaired = index_manager.check_index_health(created_index)
        assert repaired.status == HealthStatus.HEALTHY
        assert repaired.corrupted_count == 0
        assert index_manager.get_embedding_coverage(created_index)["coverage_percent"] == 100.0

    def test_failed_regeneration_still_recreates_search_index(self, index_manager, created_index, database, tracker):
        index_manager.index_items(created_index, {"1": "alpha", "2": "beta"})
        table = index_manager._table(created_index)
        with database.begin() as conn:
            conn.execute(table.update().where(table.c.item_id == "1").values(embedding=None, dimensions=None))
        dialect = index_manager.dialect

        with patch.object(index_manager, "_insert_chunk", side_effect=connection_refused), \
                patch.object(dialect, "create_ann_index", wraps=dialect.create_ann_index) as create_ann_index:
            assert index_manager.rebuild_index(created_index) is False

        create_ann_index.assert_called_once()
        assert ErrorKind.DATABASE_CONNECTION in [issue.kind for issue in tracker.active_issues()]
        assert index_manager.get_embedding_coverage(created_index)["items_with_embeddings"] == 1

    def test_orphaned_vectors_degrade_health(self, index_manager, database):
        with database.begin() as conn:
            conn.execute(text("CREATE TABLE documents (id INTEGER PRIMARY KEY)"))
            conn.execute(text("INSERT INTO documents (id) VALUES (1), (2), (3), (4)"))
        descriptor = IndexDescriptor("docs", dimension=DIMENSION, source_table="documents")
        index_manager.create_vector_index(descriptor)
        index_manager.insert_vectors(descriptor, [
            VectorRecord(str(i), [1.0] * DIMENSION, f"doc {i}") for i in range(1, 6)
        ])

        health = index_manager.check_index_health(descriptor)

        assert health.orphaned_count == 1
        assert health.status == HealthStatus.DEGRADED

    def test_optimize_index(self, index_manager, created_index):
        assert index_manager.optimize_index(created_index) is True

    def test_optimize_failure_returns_false(self, index_manager, created_index, database, tracker):
        with patch.object(database, "begin", side_effect=connection_refused):
            assert index_manager.optimize_index(created_index) is False

        assert tracker.active_issues()


class TestResilientEntryPoints:
    """Tests for index_items and search, which return results instead of raising."""

    def test_index_items_ok(self, index_manager, created_index):
        result = index_manager.index_items(created_index, {"1": "alpha", "2": "beta"})

        assert result.is_ok
        assert result.value == {"indexed": 2, "with_embeddings": 2, "text_only": 0}

    def test_blank_text_stored_text_only(self, index_manager, created_index):
        result = index_manager.index_items(created_index, {"1": "alpha", "2": "   "})

        assert result.is_degraded
        assert result.fallback == FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS
        assert result.value["text_only"] == 1

    def test_provider_outage_falls_back_to_text_only(self, index_manager, created_index, mock_provider):
        """Test items are still indexed for text search when no embeddings can be made."""
        index_manager.embedding_service = failing_service(mock_provider, 503)

        result = index_manager.index_items(created_index, {"1": "alpha", "2": "beta"})

        assert result.is_degraded
        assert result.fallback == FallbackStrategy.TEXT_SEARCH_ONLY
        assert result.value["indexed"] == 2
        assert result.issues[0].kind == ErrorKind.TEMPORARY_API_FAILURE

    def test_expired_key_fails(self, index_manager, created_index, mock_provider):
        index_manager.embedding_service = failing_service(mock_provider, 401)

        result = index_manager.index_items(created_index, {"1": "alpha"})

        assert result.is_failed
        assert result.error.kind == ErrorKind.API_KEY_EXPIRED
        assert index_manager.get_embedding_coverage(created_index)["total_items"] == 1

    def test_search_ok(self, index_manager, created_index):
        index_manager.index_items(created_index, {"1": "rebel base on hoth", "2": "imperial fleet"})

        result = index_manager.search(created_index, "rebel base on hoth", limit=1)

        assert result.is_ok
        assert result.value[0]["item_id"] == "1"

    def test_search_degrades_when_embeddings_unavailable(self, index_manager, created_index, mock_provider):
        index_manager.embedding_service = failing_service(mock_provider, 503)

        result = index_manager.search(created_index, "anything")

        assert result.is_degraded
        assert result.fallback == FallbackStrategy.TEXT_SEARCH_ONLY
        assert result.value == []

    def test_search_degrades_when_database_down(self, index_manager, created_index, database):
        index_manager.index_items(created_index, {"1": "alpha"})

        with patch.object(database, "begin", side_effect=connection_refused):
            result = index_manager.search(created_index, "alpha")

        assert result.is_degraded
        assert result.issues[0].kind == ErrorKind.DATABASE_CONNECTION


class TestBackupRestore:
    """Tests for checksummed backups."""

    def test_backup_and_restore(self, index_manager, created_index, tmp_path):
        index_manager.insert_vectors(created_index, make_records(25))
        path = str(tmp_path / "articles.jsonl")

        backup = index_manager.backup_index(created_index, path)
        index_manager.drop_vector_index(created_index)
        restored = index_manager.restore_index(created_index, path)

        assert backup["records"] == 25
        assert len(backup["checksum"]) == 64
        assert restored == 25
        assert index_manager.get_embedding_coverage(created_index)["items_with_embeddings"] == 25

    def test_tampered_backup_rejected(self, index_manager, created_index, tmp_path, tracker):
        index_manager.insert_vectors(created_index, make_records(3))
        path = tmp_path / "articles.jsonl"
        index_manager.backup_index(created_index, str(path))
        path.write_text(path.read_text() + '{"item_id": "injected", "embedding": null}\n')

        with pytest.raises(VectorIndexCorruptedError):
            index_manager.restore_index(created_index, str(path))

        assert ErrorKind.VECTOR_INDEX_CORRUPTED in [issue.kind for issue in tracker.active_issues()]

    def test_missing_backup_rejected(self, index_manager, created_index, tmp_path):
        with pytest.raises(VectorIndexCorruptedError):
            index_manager.restore_index(created_index, str(tmp_path / "absent.jsonl"))
