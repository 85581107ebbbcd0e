"""
Vector index manager.
Creates, fills, searches, checks and rebuilds per-index vector tables.

Index lifecycle: absent -> created -> populated -> (healthy | degraded |
critical) -> rebuilding -> populated. Long operations work in chunks of
``VECTOR_BATCH_SIZE`` records, each committed on its own, so a failed
chunk never undoes earlier ones and re-running is a no-op upsert.
"""
import json
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from sqlalchemy import MetaData, String, Table, cast, column, delete, func, insert, inspect, select, update
from sqlalchemy import table as table_clause
from sqlalchemy.exc import SQLAlchemyError

from vector_resilience.core.common import BaseService, CommonValidators
from vector_resilience.core.database import DatabaseManager, build_upsert, is_transient_lock_error
from vector_resilience.core.exceptions import (
    ConfigurationError,
    DatabaseConnectionError,
    GracefulDegradationError,
    InvalidIndexConfigurationError,
    NotFoundError,
    UnsupportedDistanceMetricError,
    VectorDimensionError,
    VectorIndexCorruptedError,
    handle_service_error,
)
from vector_resilience.core.reliability import (
    IndexValidator,
    MemoryManager,
    PerformanceMonitor,
    index_validator,
    memory_manager,
    performance_monitor,
)
from vector_resilience.models.vector_record import (
    SUPPORTED_METHODS,
    SUPPORTED_METRICS,
    IndexDescriptor,
    VectorRecord,
)
from vector_resilience.schemas.classification import FallbackStrategy
from vector_resilience.schemas.health import HealthStatus, IndexHealth
from vector_resilience.schemas.results import Degraded, Failed, Ok, Result
from vector_resilience.services.degradation_messages import DegradationTracker
from vector_resilience.services.error_classifier import ErrorClassifier
from vector_resilience.services.index_health import IndexHealthEvaluator
from vector_resilience.services.resilient_embedding import ResilientEmbeddingService
from vector_resilience.services.vector_dialects import (
    VectorDialect,
    VectorSupportDetector,
    calculate_distance,
)

# Failures that mean the vector table could not be reached or written.
STORAGE_ERRORS = (SQLAlchemyError, DatabaseConnectionError, MemoryError)
LOCK_RETRY_DELAY = 0.1
CALIBRATION_BOUNDS = (0.01, 0.99)


class VectorIndexManager(BaseService):
    """
    Vector index lifecycle and search over a :class:`DatabaseManager`.

    Storage failures are classified and raised as typed degradation errors
    (``DatabaseConnectionError``, ``MemoryExhaustedError``, ...) and
    recorded on the tracker. ``index_items`` and ``search`` are the
    resilient entry points: they return a Result instead of raising.
    """

    def __init__(
        self,
        database: DatabaseManager,
        embedding_service: Optional[ResilientEmbeddingService] = None,
        detector: Optional[VectorSupportDetector] = None,
        classifier: Optional[ErrorClassifier] = None,
        tracker: Optional[DegradationTracker] = None,
        evaluator: Optional[IndexHealthEvaluator] = None,
        monitor: Optional[PerformanceMonitor] = None,
        memory: Optional[MemoryManager] = None,
        validator: Optional[IndexValidator] = None,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: Optional[int] = None
    ):
        super().__init__("vector_index_manager")
        index_config = self.config.vector_index_config
        self.database = database
        self.embedding_service = embedding_service
        self.detector = detector or VectorSupportDetector()
        self.classifier = classifier or ErrorClassifier()
        self.tracker = tracker
        self.evaluator = evaluator or IndexHealthEvaluator()
        self.monitor = monitor or performance_monitor
        self.memory = memory or memory_manager
        self.validator = validator or index_validator
        self._sleep = sleep

        self.batch_size = batch_size or index_config["batch_size"]
        self.deadlock_retries = index_config["deadlock_retries"]
        self.default_threshold = index_config["similarity_threshold"]
        self.failure_threshold = index_config["failure_threshold"]

        self._dialect: Optional[VectorDialect] = None
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._known_indexes = set()
        self._search_stats: Dict[str, Dict[str, float]] = {}

    # ------------------------------------------------------------------
    # Dialect and table registry
    # ------------------------------------------------------------------

    @property
    def dialect(self) -> VectorDialect:
        if self._dialect is None:
            self._dialect = self.detector.dialect_for(self.database)
            self.logger.info("vector_dialect_selected", dialect=self._dialect.name)
        return self._dialect

    def reset_dialect(self) -> None:
        """Forget the detected dialect and table definitions after a configuration change."""
        self.detector.reset()
        self._dialect = None
        self._metadata = MetaData()
        self._tables.clear()
        self._known_indexes.clear()

    def _table(self, descriptor: IndexDescriptor) -> Table:
        table = self._tables.get(descriptor.table_name)
        if table is None:
            table = self.dialect.build_table(self._metadata, descriptor)
            self._tables[descriptor.table_name] = table
        return table

    def _require_index(self, descriptor: IndexDescriptor) -> Table:
        table = self._table(descriptor)
        if table.name in self._known_indexes:
            return table
        try:
            exists = self.database.table_exists(table.name)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "lookup_index", descriptor)
        if not exists:
            raise NotFoundError("vector_index", descriptor.index_name)
        self._known_indexes.add(table.name)
        return table

    # ------------------------------------------------------------------
    # Validation and distance helpers
    # ------------------------------------------------------------------

    def validate_vector_dimensions(self, vector: Sequence[float], dimension: Optional[int] = None) -> List[float]:
        """
        Validated copy of ``vector``.

        Raises:
            EmptyEmbeddingError, EmbeddingTooLargeError, NonNumericValueError:
                the vector itself is unusable
            VectorDimensionError: length differs from the index dimension
        """
        values = CommonValidators.validate_embedding(vector)
        expected = dimension or self.config.vector_index_config["dimension"]
        if len(values) != expected:
            raise VectorDimensionError(
                f"Vector has {len(values)} dimensions, index expects {expected}",
                field="vector",
                value=len(values)
            )
        return values

    def validate_index_configuration(self, index_config: Union[IndexDescriptor, Mapping[str, Any]]) -> bool:
        """
        Raises:
            UnsupportedDistanceMetricError: metric outside cosine, l2, inner_product
            InvalidIndexConfigurationError: bad name, method, dimension or method parameters
        """
        if isinstance(index_config, IndexDescriptor):
            values = index_config.to_dict()
        else:
            values = dict(index_config)

        if not values.get("index_name"):
            raise InvalidIndexConfigurationError("Index name is required", field="index_name")

        metric = values.get("metric", self.config.vector_index_config["metric"])
        if metric not in SUPPORTED_METRICS:
            raise UnsupportedDistanceMetricError(
                f"Unsupported distance metric: {metric}. Supported: {', '.join(SUPPORTED_METRICS)}",
                field="metric",
                value=metric
            )

        method = values.get("method", self.config.vector_index_config["method"])
        if method not in SUPPORTED_METHODS:
            raise InvalidIndexConfigurationError(
                f"Unsupported index method: {method}. Supported: {', '.join(SUPPORTED_METHODS)}",
                field="method",
                value=method
            )

        dimension = values.get("dimension", self.config.vector_index_config["dimension"])
        max_dimensions = self.config.cache_config["max_dimensions"]
        if not isinstance(dimension, int) or isinstance(dimension, bool) or not 1 <= dimension <= max_dimensions:
            raise InvalidIndexConfigurationError(
                f"Dimension must be an integer between 1 and {max_dimensions}",
                field="dimension",
                value=dimension
            )

        params = values.get("method_params") or {}
        if method == "ivfflat" and params.get("lists", 1) < 1:
            raise InvalidIndexConfigurationError("ivfflat lists must be at least 1", field="lists", value=params["lists"])
        if method == "hnsw":
            m = params.get("m", 16)
            ef_construction = params.get("ef_construction", 2 * m)
            if m < 2:
                raise InvalidIndexConfigurationError("hnsw m must be at least 2", field="m", value=m)
            if ef_construction < 2 * m:
                raise InvalidIndexConfigurationError(
                    "hnsw ef_construction must be at least twice m",
                    field="ef_construction",
                    value=ef_construction
                )
        return True

    @staticmethod
    def calculate_distance(a: Sequence[float], b: Sequence[float], metric: str = "cosine") -> float:
        return calculate_distance(a, b, metric)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_vector_index(self, descriptor: IndexDescriptor) -> bool:
        """Create the vector table and its search index; a no-op when it already exists."""
        self.validate_index_configuration(descriptor)
        table = self._table(descriptor)

        try:
            with self.database.begin() as conn:
                if inspect(conn).has_table(table.name):
                    self.logger.info("vector_index_exists", index_name=descriptor.index_name, table=table.name)
                    self._known_indexes.add(table.name)
                    return True
                self.dialect.prepare(conn)
                table.create(conn)
                ann_created = self.dialect.create_ann_index(conn, table, descriptor)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "create_vector_index", descriptor)

        self._known_indexes.add(table.name)
        self.logger.info(
            "vector_index_created",
            index_name=descriptor.index_name,
            table=table.name,
            dialect=self.dialect.name,
            method=descriptor.method if ann_created else None,
            metric=descriptor.metric,
            dimension=descriptor.dimension
        )
        return True

    def drop_vector_index(self, descriptor: IndexDescriptor) -> bool:
        table = self._table(descriptor)
        try:
            with self.database.begin() as conn:
                table.drop(conn, checkfirst=True)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "drop_vector_index", descriptor)

        self._metadata.remove(table)
        del self._tables[descriptor.table_name]
        self._known_indexes.discard(table.name)
        self._search_stats.pop(descriptor.index_name, None)
        self.logger.info("vector_index_dropped", index_name=descriptor.index_name)
        return True

    def insert_vectors(self, descriptor: IndexDescriptor, records: Sequence[VectorRecord]) -> int:
        """
        Upsert ``records`` in chunks of ``batch_size``; returns the number written.

        A chunk hitting a deadlock or lock timeout is retried up to
        ``VECTOR_DEADLOCK_RETRIES`` times. Memory exhaustion surfaces as
        MemoryExhaustedError.
        """
        table = self._require_index(descriptor)
        if not records:
            return 0

        unique: Dict[str, VectorRecord] = {}
        for record in records:
            unique[record.item_id] = record

        rows = []
        for record in unique.values():
            embedding = None
            if record.has_embedding:
                embedding = self.validate_vector_dimensions(record.embedding, descriptor.dimension)
            rows.append(self.dialect.row(record.item_id, embedding, record.text_content))

        required_mb = self.memory.estimate_batch_memory_mb(min(len(rows), self.batch_size), descriptor.dimension)
        try:
            self.memory.enforce_memory_limits("insert_vectors", required_mb)
        except GracefulDegradationError as e:
            raise self._classified(e, "insert_vectors", descriptor)

        inserted = 0
        with self.monitor.track_operation(f"vector_insert:{descriptor.index_name}"):
            for chunk_number, start in enumerate(range(0, len(rows), self.batch_size), 1):
                inserted += self._write_chunk(descriptor, table, rows[start:start + self.batch_size], chunk_number)

        self.logger.info(
            "vectors_inserted",
            index_name=descriptor.index_name,
            inserted=inserted,
            chunks=chunk_number
        )
        return inserted

    def _write_chunk(self, descriptor: IndexDescriptor, table: Table, rows: List[Dict[str, Any]], chunk_number: int) -> int:
        attempt = 0
        while True:
            try:
                return self._insert_chunk(table, rows)
            except SQLAlchemyError as e:
                if is_transient_lock_error(e) and attempt < self.deadlock_retries:
                    attempt += 1
                    self.logger.warning(
                        "vector_chunk_lock_retry",
                        index_name=descriptor.index_name,
                        chunk=chunk_number,
                        attempt=attempt,
                        error=str(e)
                    )
                    self._sleep(LOCK_RETRY_DELAY * attempt)
                    continue
                raise self._classified(
                    e, "insert_vectors", descriptor, chunk=chunk_number, retry_attempts=attempt
                )
            except (DatabaseConnectionError, MemoryError) as e:
                raise self._classified(e, "insert_vectors", descriptor, chunk=chunk_number, chunk_size=len(rows))

    def _insert_chunk(self, table: Table, rows: List[Dict[str, Any]]) -> int:
        """Upsert one chunk in its own transaction."""
        with self.database.begin() as conn:
            stmt = build_upsert(self.database.dialect_name, table, ["item_id"])
            if stmt is None:
                conn.execute(delete(table).where(table.c.item_id.in_([row["item_id"] for row in rows])))
                conn.execute(insert(table), rows)
            else:
                conn.execute(stmt, rows)
        return len(rows)

    def update_vector(
        self,
        descriptor: IndexDescriptor,
        item_id: str,
        embedding: Optional[Sequence[float]],
        text_content: str = ""
    ) -> bool:
        record = VectorRecord(item_id, list(embedding) if embedding else None, text_content, descriptor.index_name)
        return self.insert_vectors(descriptor, [record]) == 1

    def delete_vector(self, descriptor: IndexDescriptor, item_id: str) -> bool:
        return self.delete_vectors(descriptor, [item_id]) == 1

    def delete_vectors(self, descriptor: IndexDescriptor, item_ids: Sequence[str]) -> int:
        table = self._require_index(descriptor)
        item_ids = list(dict.fromkeys(item_ids))
        deleted = 0
        try:
            for start in range(0, len(item_ids), self.batch_size):
                chunk = item_ids[start:start + self.batch_size]
                with self.database.begin() as conn:
                    deleted += conn.execute(delete(table).where(table.c.item_id.in_(chunk))).rowcount
        except STORAGE_ERRORS as e:
            raise self._classified(e, "delete_vectors", descriptor, deleted_before_failure=deleted)

        self.logger.info("vectors_deleted", index_name=descriptor.index_name, requested=len(item_ids), deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_similar_vectors(
        self,
        descriptor: IndexDescriptor,
        query_vector: Sequence[float],
        limit: int = 10,
        similarity_threshold: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """
        Matches ``{item_id, similarity, text_content}`` ordered by similarity
        descending, at most ``limit``, none below ``similarity_threshold``.

        An empty list means nothing matched; a storage failure raises
        DatabaseConnectionError (or another typed degradation error).
        """
        threshold = self.default_threshold if similarity_threshold is None else similarity_threshold
        return self._search(descriptor, query_vector, limit, threshold)

    def _search(
        self,
        descriptor: IndexDescriptor,
        query_vector: Sequence[float],
        limit: int,
        threshold: Optional[float]
    ) -> List[Dict[str, Any]]:
        query = self.validate_vector_dimensions(query_vector, descriptor.dimension)
        if limit < 1:
            return []
        table = self._require_index(descriptor)

        try:
            with self.monitor.track_operation(f"vector_search:{descriptor.index_name}"):
                with self.database.begin() as conn:
                    results = self.dialect.search(conn, table, descriptor, query, limit, threshold)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "search_similar_vectors", descriptor, limit=limit)

        self._record_search(descriptor.index_name, results)
        return results

    def _record_search(self, index_name: str, results: List[Dict[str, Any]]) -> None:
        stats = self._search_stats.setdefault(
            index_name, {"searches": 0, "results": 0, "similarity_total": 0.0, "empty_searches": 0}
        )
        stats["searches"] += 1
        stats["results"] += len(results)
        stats["similarity_total"] += sum(result["similarity"] for result in results)
        if not results:
            stats["empty_searches"] += 1

    def calibrate_similarity_threshold(
        self,
        descriptor: IndexDescriptor,
        sample_queries: Sequence[Union[str, Sequence[float]]],
        top_k: int = 10,
        percentile: Optional[float] = None
    ) -> float:
        """
        Threshold from the observed top-k similarity distribution of real
        queries: the ``percentile`` cut (default 25th) clamped to [0.01, 0.99].
        Falls back to the configured threshold when no scores were observed.
        """
        percentile = percentile if percentile is not None else self.config.vector_index_config["calibration_percentile"]
        scores: List[float] = []
        for query in sample_queries:
            vector = self._query_vector(query)
            if vector is None:
                continue
            scores.extend(result["similarity"] for result in self._search(descriptor, vector, top_k, None))

        if not scores:
            self.logger.warning(
                "similarity_calibration_no_scores",
                index_name=descriptor.index_name,
                queries=len(sample_queries)
            )
            return self.default_threshold

        low, high = CALIBRATION_BOUNDS
        threshold = round(min(high, max(low, float(np.percentile(scores, percentile)))), 4)
        self.logger.info(
            "similarity_threshold_calibrated",
            index_name=descriptor.index_name,
            threshold=threshold,
            samples=len(scores),
            percentile=percentile
        )
        return threshold

    def _query_vector(self, query: Union[str, Sequence[float]]) -> Optional[List[float]]:
        if not isinstance(query, str):
            return list(query)
        if self.embedding_service is None:
            raise ConfigurationError("Text queries need an embedding service", field="embedding_service")
        result = self.embedding_service.generate_embedding(query)
        return result.value if result.is_ok else None

    # ------------------------------------------------------------------
    # Maintenance and health
    # ------------------------------------------------------------------

    def optimize_index(self, descriptor: IndexDescriptor) -> bool:
        """Non-destructive maintenance: reindex and refresh planner statistics."""
        table = self._require_index(descriptor)
        try:
            with self.monitor.track_operation(f"vector_optimize:{descriptor.index_name}"):
                self.dialect.optimize(self.database, table, descriptor)
        except STORAGE_ERRORS as e:
            self._classified(e, "optimize_index", descriptor)
            return False

        self.logger.info("vector_index_optimized", index_name=descriptor.index_name)
        return True

    def rebuild_index(self, descriptor: IndexDescriptor) -> bool:
        """
        Drop the search index, clear unreadable vectors, re-embed items
        without a vector from their stored text and recreate the index.

        The search index is recreated even when clearing or regeneration
        fails; the method then returns False.
        """
        table = self._require_index(descriptor)
        self.logger.info("vector_index_rebuild_started", index_name=descriptor.index_name)

        try:
            with self.database.begin() as conn:
                self.dialect.drop_ann_index(conn, table, descriptor)
                corrupted = self.dialect.find_corrupted(conn, table, descriptor)
        except STORAGE_ERRORS as e:
            self._classified(e, "rebuild_index", descriptor)
            return False

        completed = False
        regenerated = 0
        try:
            for start in range(0, len(corrupted), self.batch_size):
                chunk = corrupted[start:start + self.batch_size]
                with self.database.begin() as conn:
                    conn.execute(
                        update(table).where(table.c.item_id.in_(chunk)).values(embedding=None, dimensions=None)
                    )

            regenerated = self._regenerate_missing(descriptor, table)
            completed = True
        except (GracefulDegradationError, SQLAlchemyError, MemoryError) as e:
            self._classified(e, "rebuild_index", descriptor)
        finally:
            recreated = self._recreate_ann_index(descriptor, table)

        if not (completed and recreated):
            self.logger.warning(
                "vector_index_rebuild_incomplete",
                index_name=descriptor.index_name,
                cleared_corrupted=len(corrupted),
                regenerated=regenerated,
                ann_index_recreated=recreated
            )
            return False

        self.logger.info(
            "vector_index_rebuilt",
            index_name=descriptor.index_name,
            cleared_corrupted=len(corrupted),
            regenerated=regenerated
        )
        return True

    def _recreate_ann_index(self, descriptor: IndexDescriptor, table: Table) -> bool:
        try:
            with self.database.begin() as conn:
                self.dialect.create_ann_index(conn, table, descriptor)
        except STORAGE_ERRORS as e:
            self._classified(e, "create_ann_index", descriptor)
            return False
        return True

    def _regenerate_missing(self, descriptor: IndexDescriptor, table: Table) -> int:
        if self.embedding_service is None:
            return 0

        regenerated = 0
        last_id = None
        while True:
            stmt = (
                select(table.c.item_id, table.c.text_content)
                .where(table.c.embedding.is_(None), table.c.text_content != "")
                .order_by(table.c.item_id)
                .limit(self.batch_size)
            )
            if last_id is not None:
                stmt = stmt.where(table.c.item_id > last_id)
            with self.database.begin() as conn:
                rows = conn.execute(stmt).all()
            if not rows:
                return regenerated
            last_id = rows[-1].item_id

            result = self.embedding_service.generate_embeddings([row.text_content for row in rows])
            if result.is_failed:
                self.logger.warning(
                    "embedding_regeneration_stopped",
                    index_name=descriptor.index_name,
                    kind=result.error.kind.value
                )
                return regenerated

            records = [
                VectorRecord(row.item_id, embedding, row.text_content, descriptor.index_name)
                for row, embedding in zip(rows, result.value)
                if embedding is not None
            ]
            if records:
                regenerated += self.insert_vectors(descriptor, records)

    def check_index_health(self, descriptor: IndexDescriptor) -> IndexHealth:
        table = self._require_index(descriptor)
        try:
            with self.database.begin() as conn:
                total = conn.execute(select(func.count()).select_from(table)).scalar() or 0
                missing = conn.execute(
                    select(func.count()).select_from(table).where(table.c.embedding.is_(None))
                ).scalar() or 0
                corrupted = len(self.dialect.find_corrupted(conn, table, descriptor))
                orphaned = self._count_orphans(conn, table, descriptor)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "check_index_health", descriptor)

        health = self.evaluator.evaluate(descriptor.index_name, total, corrupted, orphaned, missing)
        if health.status == HealthStatus.CRITICAL and self.tracker is not None:
            error = VectorIndexCorruptedError(
                f"Index {descriptor.index_name} has {corrupted} corrupted vectors of {total}",
                descriptor.index_name,
                context={"corruption_ratio": health.corruption_ratio}
            )
            self.tracker.record(error.classified)
        return health

    @staticmethod
    def _count_orphans(conn, table: Table, descriptor: IndexDescriptor) -> int:
        if not descriptor.source_table:
            return 0
        source = table_clause(descriptor.source_table, column(descriptor.source_id_column))
        source_id = source.c[descriptor.source_id_column]
        referenced = select(source_id).where(cast(source_id, String) == table.c.item_id).exists()
        return conn.execute(select(func.count()).select_from(table).where(~referenced)).scalar() or 0

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_embedding_coverage(self, descriptor: IndexDescriptor) -> Dict[str, Any]:
        table = self._require_index(descriptor)
        try:
            with self.database.begin() as conn:
                total = conn.execute(select(func.count()).select_from(table)).scalar() or 0
                with_embeddings = conn.execute(
                    select(func.count()).select_from(table).where(table.c.embedding.isnot(None))
                ).scalar() or 0
        except STORAGE_ERRORS as e:
            raise self._classified(e, "get_embedding_coverage", descriptor)

        return {
            "index_name": descriptor.index_name,
            "total_items": total,
            "items_with_embeddings": with_embeddings,
            "coverage_percent": round(with_embeddings / total * 100, 2) if total else 0.0,
        }

    def get_index_statistics(self, descriptor: IndexDescriptor) -> Dict[str, Any]:
        table = self._require_index(descriptor)
        coverage = self.get_embedding_coverage(descriptor)
        try:
            with self.database.begin() as conn:
                storage_bytes = self.dialect.storage_size(conn, table)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "get_index_statistics", descriptor)

        search = self._search_stats.get(descriptor.index_name, {})
        results = search.get("results", 0)
        return {
            **descriptor.to_dict(),
            "dialect": self.dialect.name,
            "total_vectors": coverage["total_items"],
            "vectors_with_embeddings": coverage["items_with_embeddings"],
            "missing_embeddings": coverage["total_items"] - coverage["items_with_embeddings"],
            "coverage_percent": coverage["coverage_percent"],
            "storage_bytes": storage_bytes,
            "search_count": search.get("searches", 0),
            "average_similarity": round(search["similarity_total"] / results, 4) if results else None,
        }

    def get_performance_metrics(self, descriptor: IndexDescriptor) -> Dict[str, Any]:
        name = descriptor.index_name
        search = self._search_stats.get(name, {})
        searches = search.get("searches", 0)

        metrics = {
            "index_name": name,
            "search": self.monitor.get_metrics(f"vector_search:{name}").to_dict(),
            "insert": self.monitor.get_metrics(f"vector_insert:{name}").to_dict(),
            "searches": searches,
            "average_results": round(search["results"] / searches, 2) if searches else 0.0,
            "empty_result_rate": round(search["empty_searches"] / searches * 100, 2) if searches else 0.0,
            "cache_hit_rate": None,
        }
        cache_manager = getattr(self.embedding_service, "cache_manager", None)
        if cache_manager is not None:
            metrics["cache_hit_rate"] = cache_manager.get_cache_statistics().get("hit_rate")
        return metrics

    # ------------------------------------------------------------------
    # Resilient entry points
    # ------------------------------------------------------------------

    def index_items(self, descriptor: IndexDescriptor, items: Mapping[str, str]) -> Result:
        """
        Embed and store ``{item_id: text}``. Items without an embedding are
        stored text-only so text search still finds them.

        Returns Ok(summary), Degraded(summary) when any item fell back to
        text-only, or Failed when nothing could be written.
        """
        service = self._require_embedding_service()
        items = dict(items)
        summary = {"indexed": 0, "with_embeddings": 0, "text_only": 0}
        if not items:
            return Ok(summary)

        item_ids = list(items)
        embeddable = [item_id for item_id in item_ids if items[item_id] and items[item_id].strip()]
        embeddings: Dict[str, Optional[List[float]]] = {}
        issues = ()
        failed = None

        if embeddable:
            result = service.generate_embeddings([items[item_id] for item_id in embeddable])
            if result.is_failed:
                failed = result
            else:
                embeddings = dict(zip(embeddable, result.value))
                if result.is_degraded:
                    issues = result.issues

        records = [
            VectorRecord(item_id, embeddings.get(item_id), items[item_id], descriptor.index_name)
            for item_id in item_ids
        ]
        try:
            summary["indexed"] = self.insert_vectors(descriptor, records)
        except GracefulDegradationError as e:
            return Failed(e.classified)

        summary["with_embeddings"] = sum(1 for record in records if record.has_embedding)
        summary["text_only"] = len(records) - summary["with_embeddings"]
        if failed is not None:
            return failed
        if not summary["text_only"]:
            return Ok(summary)

        failure_ratio = summary["text_only"] / len(records)
        description = (
            f"{summary['text_only']} of {len(records)} items were indexed without embeddings "
            "and are only reachable through text search"
        )
        fallback = FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS
        if failure_ratio > self.failure_threshold:
            fallback = FallbackStrategy.TEXT_SEARCH_ONLY
        self.logger.warning(
            "items_indexed_text_only",
            index_name=descriptor.index_name,
            text_only=summary["text_only"],
            failure_ratio=round(failure_ratio, 4)
        )
        return Degraded(fallback, description, summary, tuple(issues))

    def search(
        self,
        descriptor: IndexDescriptor,
        query_text: str,
        limit: int = 10,
        similarity_threshold: Optional[float] = None
    ) -> Result:
        """Semantic search for ``query_text``; Degraded(text_search_only) when vectors are unavailable."""
        service = self._require_embedding_service()
        embedding = service.generate_embedding(query_text)
        if not embedding.is_ok:
            issues = (embedding.error,) if embedding.is_failed else embedding.issues
            description = issues[0].user_message if issues else "Vector search is unavailable"
            return Degraded(FallbackStrategy.TEXT_SEARCH_ONLY, description, [], tuple(issues))

        try:
            matches = self.search_similar_vectors(descriptor, embedding.value, limit, similarity_threshold)
        except GracefulDegradationError as e:
            return Degraded(FallbackStrategy.TEXT_SEARCH_ONLY, e.classified.user_message, [], (e.classified,))
        return Ok(matches)

    def _require_embedding_service(self) -> ResilientEmbeddingService:
        if self.embedding_service is None:
            raise ConfigurationError("An embedding service is required for this operation", field="embedding_service")
        return self.embedding_service

    # ------------------------------------------------------------------
    # Backup and restore
    # ------------------------------------------------------------------

    def backup_index(self, descriptor: IndexDescriptor, path: str) -> Dict[str, Any]:
        """
        Write every record as one JSON line to ``path`` and its SHA-256 to
        ``path + '.sha256'``. Unreadable vectors are written as null.
        """
        table = self._require_index(descriptor)
        written = unreadable = 0
        columns = [table.c.item_id, table.c.embedding, table.c.text_content]

        try:
            with open(path, "w", encoding="utf-8") as handle:
                with self.database.begin() as conn:
                    for rows in self.dialect.scan(conn, table, columns):
                        for row in rows:
                            embedding = None
                            if row.embedding is not None:
                                try:
                                    embedding = self.dialect.decode(row.embedding, descriptor.dimension)
                                except ValueError:
                                    unreadable += 1
                            handle.write(json.dumps({
                                "item_id": row.item_id,
                                "embedding": embedding,
                                "text_content": row.text_content,
                            }) + "\n")
                            written += 1
            checksum = self.validator.calculate_file_checksum(path)
            with open(self._checksum_path(path), "w", encoding="utf-8") as handle:
                handle.write(checksum)
        except STORAGE_ERRORS as e:
            raise self._classified(e, "backup_index", descriptor)
        except OSError as e:
            handle_service_error("backup_index", e, {"index_name": descriptor.index_name, "path": path})

        self.logger.info(
            "vector_index_backed_up",
            index_name=descriptor.index_name,
            path=path,
            records=written,
            unreadable=unreadable,
            checksum=checksum
        )
        return {"path": path, "records": written, "unreadable": unreadable, "checksum": checksum}

    def restore_index(self, descriptor: IndexDescriptor, path: str) -> int:
        """
        Restore a :meth:`backup_index` file after verifying its checksum.

        Raises:
            VectorIndexCorruptedError: missing, empty, tampered or unparseable backup
        """
        expected = None
        checksum_path = self._checksum_path(path)
        if os.path.exists(checksum_path):
            with open(checksum_path, encoding="utf-8") as handle:
                expected = handle.read().strip()

        if not self.validator.validate_file_integrity(path, expected):
            raise self._corrupted_backup(descriptor, path, "failed integrity validation")

        self.create_vector_index(descriptor)
        restored = 0
        batch: List[VectorRecord] = []
        with open(path, encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    batch.append(VectorRecord(
                        data["item_id"],
                        data.get("embedding"),
                        data.get("text_content", ""),
                        descriptor.index_name
                    ))
                except (ValueError, KeyError, TypeError) as e:
                    raise self._corrupted_backup(descriptor, path, f"line {line_number} is unreadable") from e
                if len(batch) >= self.batch_size:
                    restored += self.insert_vectors(descriptor, batch)
                    batch = []
        if batch:
            restored += self.insert_vectors(descriptor, batch)

        self.logger.info("vector_index_restored", index_name=descriptor.index_name, path=path, records=restored)
        return restored

    def _corrupted_backup(self, descriptor: IndexDescriptor, path: str, reason: str) -> VectorIndexCorruptedError:
        error = VectorIndexCorruptedError(
            f"Backup {path} {reason}",
            descriptor.index_name,
            context={"operation": "restore_index", "path": path}
        )
        if self.tracker is not None:
            self.tracker.record(error.classified)
        return error

    @staticmethod
    def _checksum_path(path: str) -> str:
        return f"{path}.sha256"

    # ------------------------------------------------------------------
    # Failure classification
    # ------------------------------------------------------------------

    def _classified(
        self,
        error: BaseException,
        operation: str,
        descriptor: IndexDescriptor,
        **context
    ) -> GracefulDegradationError:
        """Typed degradation error for a storage failure; logged and tracked."""
        context.update({
            "operation": operation,
            "index_name": descriptor.index_name,
            "service_name": "Vector Index",
        })
        typed = self.classifier.create_exception(error, context)
        classified = typed.classified
        if classified.should_log:
            self.logger.error(
                "vector_index_operation_failed",
                operation=operation,
                index_name=descriptor.index_name,
                kind=classified.kind.value,
                error=str(error)
            )
        if self.tracker is not None:
            self.tracker.record(classified)
        return typed
