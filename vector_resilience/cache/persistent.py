"""
Database-backed embedding cache.
Survives restarts and is shared between worker processes.
"""
import random
import threading
import time
import zlib
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np
from sqlalchemy import MetaData, and_, delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from vector_resilience.cache.base import EmbeddingCacheInterface
from vector_resilience.core.common import CommonValidators, get_service_logger
from vector_resilience.core.config import config
from vector_resilience.core.database import DatabaseManager, build_upsert
from vector_resilience.core.exceptions import CacheDegradedError, DatabaseConnectionError
from vector_resilience.models.cache_entry import build_cache_table

FORMAT_RAW = b"r"
FORMAT_ZLIB = b"z"
COMPRESSION_LEVEL = 6

# Failures that mean the table could not be reached or written.
STORAGE_ERRORS = (SQLAlchemyError, DatabaseConnectionError)


def serialize_embedding(values: List[float], compress: bool = True) -> bytes:
    """Little-endian float64 bytes behind a one-byte format marker."""
    payload = np.asarray(values, dtype="<f8").tobytes()
    if compress:
        return FORMAT_ZLIB + zlib.compress(payload, COMPRESSION_LEVEL)
    return FORMAT_RAW + payload


def deserialize_embedding(data: bytes) -> List[float]:
    data = bytes(data)
    marker, body = data[:1], data[1:]
    if marker == FORMAT_ZLIB:
        body = zlib.decompress(body)
    elif marker != FORMAT_RAW:
        raise ValueError(f"Unknown embedding encoding marker: {marker!r}")
    if len(body) % 8:
        raise ValueError("Embedding payload is truncated")
    return np.frombuffer(body, dtype="<f8").tolist()


class DatabaseEmbeddingCache(EmbeddingCacheInterface):
    """
    Embedding cache stored in a relational table.

    Writes are upserts; ``set_multiple`` runs in one transaction. Each write
    has a ``cleanup_probability`` chance of running :meth:`maintenance`.
    Read failures raise CacheDegradedError; write failures return False.
    """

    def __init__(
        self,
        database: DatabaseManager,
        table_name: Optional[str] = None,
        default_ttl: Optional[int] = None,
        max_entries: Optional[int] = None,
        cleanup_probability: Optional[float] = None,
        cleanup_threshold: Optional[float] = None,
        enable_compression: Optional[bool] = None,
        max_dimensions: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        random_source: Callable[[], float] = random.random
    ):
        cache_config = config.persistent_cache_config
        self.database = database
        self.table_name = table_name or cache_config["table_name"]
        self.default_ttl = cache_config["default_ttl"] if default_ttl is None else default_ttl
        self.max_entries = max_entries or cache_config["max_entries"]
        self.cleanup_probability = (
            cache_config["cleanup_probability"] if cleanup_probability is None else cleanup_probability
        )
        self.cleanup_threshold = cleanup_threshold or cache_config["cleanup_threshold"]
        self.enable_compression = (
            cache_config["enable_compression"] if enable_compression is None else enable_compression
        )
        self.max_dimensions = max_dimensions or cache_config["max_dimensions"]
        self._clock = clock
        self._random = random_source
        self.logger = get_service_logger("database_embedding_cache")

        self._metadata = MetaData()
        self.table = build_cache_table(self._metadata, self.table_name)
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0, "evictions": 0}
        self._stats_lock = threading.Lock()
        self._table_ready = False

    def ensure_table(self) -> None:
        if not self._table_ready:
            self._metadata.create_all(self.database.engine, tables=[self.table], checkfirst=True)
            self._table_ready = True

    def get(self, text_hash: str) -> Optional[List[float]]:
        if not text_hash:
            return None
        CommonValidators.validate_hash(text_hash)
        return self._read([text_hash]).get(text_hash)

    def set(self, text_hash: str, embedding: List[float], ttl: Optional[int] = None) -> bool:
        CommonValidators.validate_hash(text_hash)
        values = CommonValidators.validate_embedding(embedding, self.max_dimensions)
        return self._write({text_hash: values}, ttl)

    def get_multiple(self, text_hashes: Iterable[str]) -> Dict[str, List[float]]:
        hashes = [h for h in dict.fromkeys(text_hashes) if h]
        if not hashes:
            return {}
        for text_hash in hashes:
            CommonValidators.validate_hash(text_hash)
        return self._read(hashes)

    def set_multiple(self, items: Dict[str, List[float]], ttl: Optional[int] = None) -> bool:
        if not items:
            return True
        validated = {}
        for text_hash, embedding in items.items():
            CommonValidators.validate_hash(text_hash)
            validated[text_hash] = CommonValidators.validate_embedding(embedding, self.max_dimensions)
        return self._write(validated, ttl)

    def invalidate(self, text_hash: str) -> bool:
        if not CommonValidators.is_valid_hash(text_hash):
            return False
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                removed = conn.execute(
                    delete(self.table).where(self.table.c.text_hash == text_hash)
                ).rowcount
        except STORAGE_ERRORS as e:
            raise self._degraded("invalidate", e)

        if removed:
            self._count("invalidations")
        return bool(removed)

    def clear(self) -> bool:
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                removed = conn.execute(delete(self.table)).rowcount
        except STORAGE_ERRORS as e:
            self.logger.error("database_cache_clear_failed", error=str(e))
            return False

        self._count("invalidations", max(removed, 0))
        self.logger.info("database_cache_cleared", removed=removed)
        return True

    def clear_by_age(self, max_age_seconds: int) -> int:
        cutoff = int(self._clock()) - max_age_seconds
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                removed = conn.execute(
                    delete(self.table).where(self.table.c.created < cutoff)
                ).rowcount
        except STORAGE_ERRORS as e:
            raise self._degraded("clear_by_age", e)

        self._count("invalidations", max(removed, 0))
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = int(self._clock())
        t = self.table
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                row = conn.execute(
                    select(
                        func.count(),
                        func.avg(t.c.dimensions),
                        func.min(t.c.created),
                        func.max(t.c.created),
                        func.coalesce(func.sum(func.length(t.c.embedding_data)), 0),
                    ).select_from(t)
                ).one()
                expired = conn.execute(
                    select(func.count()).select_from(t).where(and_(t.c.expires.isnot(None), t.c.expires <= now))
                ).scalar_one()
        except STORAGE_ERRORS as e:
            raise self._degraded("get_stats", e)

        with self._stats_lock:
            stats = dict(self._stats)

        total, avg_dims, oldest, newest, size_bytes = row
        stats.update({
            "backend": "database",
            "table_name": self.table_name,
            "total_entries": total,
            "expired_entries": expired,
            "average_dimensions": round(float(avg_dims), 2) if avg_dims is not None else 0,
            "oldest_entry": oldest,
            "newest_entry": newest,
            "hit_rate": self.hit_rate(stats["hits"], stats["misses"]),
            "max_entries": self.max_entries,
            "cache_size_bytes": int(size_bytes),
            "compression_enabled": self.enable_compression,
        })
        return stats

    def maintenance(self) -> bool:
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                expired = self._delete_expired(conn)
                evicted = self._enforce_ceiling(conn)
        except STORAGE_ERRORS as e:
            self.logger.error("database_cache_maintenance_failed", error=str(e))
            return False

        if self.database.is_postgresql:
            try:
                with self.database.autocommit() as conn:
                    conn.execute(text(f"VACUUM ANALYZE {self.table_name}"))
            except STORAGE_ERRORS as e:
                self.logger.warning("database_cache_vacuum_failed", error=str(e))

        self.logger.info("database_cache_maintenance_completed", expired=expired, evicted=evicted)
        return True

    def _read(self, hashes: List[str]) -> Dict[str, List[float]]:
        now = int(self._clock())
        t = self.table
        found: Dict[str, List[float]] = {}
        try:
            self.ensure_table()
            with self.database.begin() as conn:
                rows = conn.execute(
                    select(t.c.text_hash, t.c.embedding_data, t.c.expires).where(t.c.text_hash.in_(hashes))
                ).all()

                stale = []
                for text_hash, data, expires in rows:
                    if expires is not None and expires <= now:
                        stale.append(text_hash)
                        continue
                    try:
                        found[text_hash] = deserialize_embedding(data)
                    except (ValueError, zlib.error) as e:
                        self.logger.warning("database_cache_entry_unreadable", text_hash=text_hash, error=str(e))
                        stale.append(text_hash)

                if stale:
                    conn.execute(delete(t).where(t.c.text_hash.in_(stale)))
                if found:
                    conn.execute(
                        update(t)
                        .where(t.c.text_hash.in_(list(found)))
                        .values(last_accessed=now, hit_count=t.c.hit_count + 1)
                    )
        except STORAGE_ERRORS as e:
            raise self._degraded("get", e)

        self._count("hits", len(found))
        self._count("misses", len(hashes) - len(found))
        return found

    def _write(self, items: Dict[str, List[float]], ttl: Optional[int]) -> bool:
        now = int(self._clock())
        ttl = self.default_ttl if ttl is None else ttl
        rows = [
            {
                "text_hash": text_hash,
                "embedding_data": serialize_embedding(values, self.enable_compression),
                "dimensions": len(values),
                "created": now,
                "last_accessed": now,
                "expires": now + ttl if ttl > 0 else None,
                "hit_count": 0,
            }
            for text_hash, values in items.items()
        ]

        try:
            self.ensure_table()
            with self.database.begin() as conn:
                self._upsert(conn, rows)
                evicted = self._enforce_ceiling(conn)
        except STORAGE_ERRORS as e:
            self.logger.error("database_cache_write_failed", count=len(rows), error=str(e))
            return False

        self._count("sets", len(rows))
        if evicted:
            self.logger.info("database_cache_eviction_performed", evicted=evicted)
        if self.cleanup_probability and self._random() < self.cleanup_probability:
            self.maintenance()
        return True

    def _upsert(self, conn, rows: List[Dict[str, Any]]) -> None:
        stmt = build_upsert(self.database.dialect_name, self.table, ["text_hash"], {"hit_count": 0})
        if stmt is not None:
            conn.execute(stmt, rows)
            return

        conn.execute(delete(self.table).where(self.table.c.text_hash.in_([r["text_hash"] for r in rows])))
        conn.execute(self.table.insert(), rows)

    def _delete_expired(self, conn) -> int:
        now = int(self._clock())
        t = self.table
        return conn.execute(
            delete(t).where(and_(t.c.expires.isnot(None), t.c.expires <= now))
        ).rowcount

    def _enforce_ceiling(self, conn) -> int:
        """Evict least recently used rows down to the cleanup threshold."""
        t = self.table
        total = conn.execute(select(func.count()).select_from(t)).scalar_one()
        if total <= self.max_entries:
            return 0

        removed = self._delete_expired(conn)
        target = max(1, int(self.max_entries * self.cleanup_threshold))
        overflow = total - removed - target
        if overflow > 0:
            victims = select(t.c.text_hash).order_by(t.c.last_accessed, t.c.hit_count).limit(overflow)
            removed += conn.execute(
                delete(t).where(t.c.text_hash.in_(victims.scalar_subquery()))
            ).rowcount
        self._count("evictions", removed)
        return removed

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def _degraded(self, operation: str, error: Exception) -> CacheDegradedError:
        self.logger.warning("database_cache_operation_failed", operation=operation, error=str(error))
        degraded = CacheDegradedError(
            f"Embedding cache {operation} failed: {error}",
            context={"operation": operation, "table": self.table_name}
        )
        degraded.__cause__ = error
        return degraded
