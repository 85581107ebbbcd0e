"""
Vector storage dialects.

PgvectorDialect stores native ``vector(n)`` columns and lets PostgreSQL
rank results through an ivfflat or hnsw index. EncodedDialect stores
float64 bytes in a binary column and ranks with numpy in bounded chunks;
it works on any SQLAlchemy database and is what SQLite uses.
"""
import heapq
import math
import time
import zlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np
from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Column,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    and_,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection

from vector_resilience.cache.persistent import deserialize_embedding, serialize_embedding
from vector_resilience.core.common import get_service_logger
from vector_resilience.core.config import config
from vector_resilience.core.database import DatabaseManager
from vector_resilience.core.exceptions import UnsupportedDistanceMetricError, VectorDimensionError
from vector_resilience.models.vector_record import SUPPORTED_METRICS, IndexDescriptor

OPERATOR_CLASSES = {
    "cosine": "vector_cosine_ops",
    "l2": "vector_l2_ops",
    "inner_product": "vector_ip_ops",
}


def calculate_distance(a: Sequence[float], b: Sequence[float], metric: str = "cosine") -> float:
    """
    Distance between two vectors.

    cosine is ``1 - cos(a, b)`` (1.0 for orthogonal vectors, 1.0 when either
    vector is zero), l2 is the Euclidean distance and inner_product is the
    plain dot product.
    """
    if metric not in SUPPORTED_METRICS:
        raise UnsupportedDistanceMetricError(
            f"Unsupported distance metric: {metric}. Supported: {', '.join(SUPPORTED_METRICS)}",
            field="metric",
            value=metric
        )
    if len(a) != len(b):
        raise VectorDimensionError(
            f"Vector dimensions differ: {len(a)} vs {len(b)}",
            field="vector",
            value=len(b)
        )

    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    if metric == "l2":
        return float(np.linalg.norm(left - right))
    if metric == "inner_product":
        return float(np.dot(left, right))

    norms = np.linalg.norm(left) * np.linalg.norm(right)
    if norms == 0:
        return 1.0
    return float(1.0 - np.dot(left, right) / norms)


class _Ranked:
    """Heap entry ordered weakest first: lower score, then larger item id."""

    __slots__ = ("score", "item_id", "text_content")

    def __init__(self, score: float, item_id: str, text_content: Optional[str]):
        self.score = score
        self.item_id = item_id
        self.text_content = text_content

    def __lt__(self, other: "_Ranked") -> bool:
        if self.score != other.score:
            return self.score < other.score
        return self.item_id > other.item_id


def batch_similarities(matrix: np.ndarray, query: np.ndarray, metric: str) -> np.ndarray:
    """Similarity of every row of ``matrix`` to ``query``."""
    if metric == "l2":
        return 1.0 / (1.0 + np.linalg.norm(matrix - query, axis=1))
    dots = matrix @ query
    if metric == "inner_product":
        return dots
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


class VectorDialect(ABC):
    """Storage and ranking strategy for one vector column type."""

    name = "vector_dialect"

    def __init__(self, scan_chunk_size: Optional[int] = None):
        self.scan_chunk_size = scan_chunk_size or config.vector_index_config["scan_chunk_size"]
        self.logger = get_service_logger(f"{self.name}_dialect")

    @abstractmethod
    def embedding_column_type(self, dimension: int):
        """SQLAlchemy type for the embedding column."""

    @abstractmethod
    def encode(self, embedding: Optional[Sequence[float]]) -> Any:
        """Column value for an embedding; None stays None."""

    @abstractmethod
    def decode(self, value: Any, dimension: int) -> List[float]:
        """
        Embedding from a stored value.

        Raises:
            ValueError: the stored value is unreadable or has the wrong shape
        """

    @abstractmethod
    def search(
        self,
        conn: Connection,
        table: Table,
        descriptor: IndexDescriptor,
        query: Sequence[float],
        limit: int,
        threshold: Optional[float]
    ) -> List[Dict[str, Any]]:
        """Best matches ordered by similarity descending."""

    def build_table(self, metadata: MetaData, descriptor: IndexDescriptor) -> Table:
        return Table(
            descriptor.table_name,
            metadata,
            Column("item_id", String(255), primary_key=True),
            Column("embedding", self.embedding_column_type(descriptor.dimension), nullable=True),
            Column("text_content", Text, nullable=False, default=""),
            Column("dimensions", Integer, nullable=True),
            Column("updated", Integer, nullable=False),
        )

    def prepare(self, conn: Connection) -> None:
        """Database-level setup needed before tables are created."""

    def create_ann_index(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> bool:
        """Create the nearest-neighbour index; False when the dialect has none."""
        return False

    def drop_ann_index(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> None:
        """Drop the nearest-neighbour index if the dialect has one."""

    def optimize(self, database: DatabaseManager, table: Table, descriptor: IndexDescriptor) -> None:
        if database.is_postgresql:
            with database.autocommit() as conn:
                conn.execute(text(f'VACUUM ANALYZE "{table.name}"'))
        else:
            with database.begin() as conn:
                conn.execute(text(f'ANALYZE "{table.name}"'))

    def storage_size(self, conn: Connection, table: Table) -> int:
        size = conn.execute(
            select(
                func.coalesce(func.sum(func.length(table.c.embedding)), 0)
                + func.coalesce(func.sum(func.length(table.c.text_content)), 0)
            ).select_from(table)
        ).scalar()
        return int(size or 0)

    def row(self, item_id: str, embedding: Optional[Sequence[float]], text_content: str) -> Dict[str, Any]:
        """Insert parameters for one record."""
        return {
            "item_id": item_id,
            "embedding": self.encode(embedding),
            "text_content": text_content or "",
            "dimensions": len(embedding) if embedding else None,
            "updated": int(time.time()),
        }

    def scan(self, conn: Connection, table: Table, columns: List[Any], where=None) -> Iterator[List[Any]]:
        """Rows in item_id order, ``scan_chunk_size`` at a time."""
        last_id = None
        while True:
            conditions = [] if where is None else [where]
            if last_id is not None:
                conditions.append(table.c.item_id > last_id)
            stmt = select(*columns).order_by(table.c.item_id).limit(self.scan_chunk_size)
            if conditions:
                stmt = stmt.where(and_(*conditions))
            rows = conn.execute(stmt).all()
            if not rows:
                return
            yield rows
            last_id = rows[-1].item_id

    def find_corrupted(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> List[str]:
        """Item ids whose stored embedding cannot be read back."""
        corrupted = []
        columns = [table.c.item_id, table.c.embedding]
        for rows in self.scan(conn, table, columns, table.c.embedding.isnot(None)):
            for row in rows:
                try:
                    self.decode(row.embedding, descriptor.dimension)
                except ValueError:
                    corrupted.append(row.item_id)
        return corrupted


class EncodedDialect(VectorDialect):
    """Float64 bytes in a binary column; similarity computed with numpy."""

    name = "encoded"

    def embedding_column_type(self, dimension: int):
        return LargeBinary

    def encode(self, embedding: Optional[Sequence[float]]) -> Optional[bytes]:
        if not embedding:
            return None
        return serialize_embedding(list(embedding), compress=False)

    def decode(self, value: Any, dimension: int) -> List[float]:
        try:
            embedding = deserialize_embedding(value)
        except zlib.error as e:
            raise ValueError(f"Stored vector cannot be decompressed: {e}") from e
        if len(embedding) != dimension:
            raise ValueError(f"Stored vector has {len(embedding)} dimensions, expected {dimension}")
        if not all(math.isfinite(component) for component in embedding):
            raise ValueError("Stored vector contains non-finite values")
        return embedding

    def search(
        self,
        conn: Connection,
        table: Table,
        descriptor: IndexDescriptor,
        query: Sequence[float],
        limit: int,
        threshold: Optional[float]
    ) -> List[Dict[str, Any]]:
        query_vector = np.asarray(query, dtype=np.float64)
        best: List[_Ranked] = []
        skipped = 0

        columns = [table.c.item_id, table.c.embedding, table.c.text_content]
        for rows in self.scan(conn, table, columns, table.c.embedding.isnot(None)):
            candidates, vectors = [], []
            for row in rows:
                try:
                    vectors.append(self.decode(row.embedding, descriptor.dimension))
                except ValueError:
                    skipped += 1
                    continue
                candidates.append(row)
            if not vectors:
                continue

            scores = batch_similarities(np.asarray(vectors), query_vector, descriptor.metric)
            for row, score in zip(candidates, scores):
                score = float(score)
                if threshold is not None and score < threshold:
                    continue
                entry = _Ranked(score, row.item_id, row.text_content)
                if len(best) < limit:
                    heapq.heappush(best, entry)
                elif best[0] < entry:
                    heapq.heapreplace(best, entry)

        if skipped:
            self.logger.warning("corrupted_vectors_skipped", table=table.name, count=skipped)

        ranked = sorted(best, key=lambda entry: (-entry.score, entry.item_id))
        return [
            {"item_id": entry.item_id, "similarity": entry.score, "text_content": entry.text_content}
            for entry in ranked
        ]


class PgvectorDialect(VectorDialect):
    """Native pgvector storage with an ivfflat or hnsw index."""

    name = "pgvector"

    def embedding_column_type(self, dimension: int):
        return Vector(dimension)

    def build_table(self, metadata: MetaData, descriptor: IndexDescriptor) -> Table:
        table = super().build_table(metadata, descriptor)
        Index(
            descriptor.ann_index_name,
            table.c.embedding,
            postgresql_using=descriptor.method,
            postgresql_with=descriptor.resolved_method_params(),
            postgresql_ops={"embedding": OPERATOR_CLASSES[descriptor.metric]},
        )
        return table

    def prepare(self, conn: Connection) -> None:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    def encode(self, embedding: Optional[Sequence[float]]) -> Optional[List[float]]:
        return list(embedding) if embedding else None

    def decode(self, value: Any, dimension: int) -> List[float]:
        embedding = [float(component) for component in value]
        if len(embedding) != dimension:
            raise ValueError(f"Stored vector has {len(embedding)} dimensions, expected {dimension}")
        return embedding

    def create_ann_index(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> bool:
        self._ann_index(table, descriptor).create(conn, checkfirst=True)
        return True

    def drop_ann_index(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> None:
        self._ann_index(table, descriptor).drop(conn, checkfirst=True)

    def optimize(self, database: DatabaseManager, table: Table, descriptor: IndexDescriptor) -> None:
        with database.autocommit() as conn:
            conn.execute(text(f'REINDEX INDEX "{descriptor.ann_index_name}"'))
        super().optimize(database, table, descriptor)

    def storage_size(self, conn: Connection, table: Table) -> int:
        return int(conn.execute(select(func.pg_total_relation_size(table.name))).scalar() or 0)

    def find_corrupted(self, conn: Connection, table: Table, descriptor: IndexDescriptor) -> List[str]:
        # pgvector validates values on write; only a dimension drift can slip through.
        stmt = select(table.c.item_id).where(
            and_(
                table.c.embedding.isnot(None),
                func.vector_dims(table.c.embedding) != descriptor.dimension
            )
        )
        return list(conn.execute(stmt).scalars())

    def search(
        self,
        conn: Connection,
        table: Table,
        descriptor: IndexDescriptor,
        query: Sequence[float],
        limit: int,
        threshold: Optional[float]
    ) -> List[Dict[str, Any]]:
        column = table.c.embedding
        query = list(query)
        if descriptor.metric == "l2":
            distance = column.l2_distance(query)
            similarity = 1.0 / (1.0 + distance)
        elif descriptor.metric == "inner_product":
            distance = column.max_inner_product(query)
            similarity = -distance
        else:
            distance = column.cosine_distance(query)
            similarity = 1.0 - distance

        stmt = (
            select(table.c.item_id, table.c.text_content, similarity.label("similarity"))
            .where(column.isnot(None))
            .order_by(distance, table.c.item_id)
            .limit(limit)
        )
        if threshold is not None:
            stmt = stmt.where(similarity >= threshold)

        return [
            {"item_id": row.item_id, "similarity": float(row.similarity), "text_content": row.text_content}
            for row in conn.execute(stmt)
        ]

    @staticmethod
    def _ann_index(table: Table, descriptor: IndexDescriptor) -> Index:
        for index in table.indexes:
            if index.name == descriptor.ann_index_name:
                return index
        raise LookupError(f"No nearest-neighbour index defined on {table.name}")


class VectorSupportDetector:
    """
    Chooses the vector dialect for a database.

    pgvector availability is checked once per connection target and kept
    until :meth:`reset`, which owners call after a configuration change.
    """

    def __init__(self, use_pgvector: Optional[bool] = None, scan_chunk_size: Optional[int] = None):
        self.use_pgvector = config.vector_index_config["use_pgvector"] if use_pgvector is None else use_pgvector
        self.scan_chunk_size = scan_chunk_size
        self.logger = get_service_logger("vector_support_detector")
        self._support: Dict[str, bool] = {}

    def supports_pgvector(self, database: DatabaseManager) -> bool:
        if not self.use_pgvector or not database.is_postgresql:
            return False

        key = database.fingerprint
        if key not in self._support:
            with database.begin() as conn:
                available = conn.execute(
                    text("SELECT 1 FROM pg_available_extensions WHERE name = 'vector'")
                ).first() is not None
            self._support[key] = available
            self.logger.info("pgvector_support_detected", available=available)
        return self._support[key]

    def dialect_for(self, database: DatabaseManager) -> VectorDialect:
        if self.supports_pgvector(database):
            return PgvectorDialect(self.scan_chunk_size)
        return EncodedDialect(self.scan_chunk_size)

    def reset(self) -> None:
        self._support.clear()
