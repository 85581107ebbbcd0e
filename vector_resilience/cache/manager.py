"""
Embedding cache manager.
Maps texts to cache keys, degrades cache failures to misses and provides
the maintenance and statistics operations used by the management API.
"""
import hashlib
import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from vector_resilience.cache.base import EmbeddingCacheInterface
from vector_resilience.cache.memory import MemoryEmbeddingCache
from vector_resilience.cache.persistent import DatabaseEmbeddingCache
from vector_resilience.cache.tiered import TieredEmbeddingCache
from vector_resilience.core.common import BaseService, normalize_text
from vector_resilience.core.config import config
from vector_resilience.core.database import DatabaseManager, get_database_manager
from vector_resilience.core.exceptions import (
    ConfigurationError,
    GracefulDegradationError,
    ValidationError,
)
from vector_resilience.schemas.classification import ClassifiedError

SECONDS_PER_DAY = 86400


def generate_cache_key(text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    SHA-256 cache key for a text and optional model metadata.

    Cosmetic whitespace differences share a key; different metadata
    (model, version) never does.
    """
    if not text or not text.strip():
        raise ValidationError("Text cannot be empty for cache key generation", field="text")

    payload = normalize_text(text)
    if metadata:
        payload += "|" + json.dumps(metadata, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def create_cache_backend(
    backend: Optional[str] = None,
    database: Optional[DatabaseManager] = None
) -> EmbeddingCacheInterface:
    """Build the configured cache backend (memory, database or tiered)."""
    backend = backend or config.cache_config["backend"]
    if backend == "memory":
        return MemoryEmbeddingCache()
    if backend == "database":
        return DatabaseEmbeddingCache(database or get_database_manager())
    if backend == "tiered":
        return TieredEmbeddingCache(
            MemoryEmbeddingCache(),
            DatabaseEmbeddingCache(database or get_database_manager())
        )
    raise ConfigurationError(f"Unknown cache backend: {backend}", field="CACHE_BACKEND")


class EmbeddingCacheManager(BaseService):
    """
    Text-level facade over an :class:`EmbeddingCacheInterface` backend.

    Reads never fail: a backend that raises a degradation error is treated
    as a miss and the classified issue is handed to ``issue_recorder``.
    A disabled manager caches nothing and always misses.
    """

    def __init__(
        self,
        cache: EmbeddingCacheInterface,
        enabled: Optional[bool] = None,
        issue_recorder: Optional[Callable[[ClassifiedError], None]] = None
    ):
        super().__init__("embedding_cache_manager")
        self.cache = cache
        self.enabled = config.cache_config["enabled"] if enabled is None else enabled
        self._issue_recorder = issue_recorder

    def generate_cache_key(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        return generate_cache_key(text, metadata)

    def get_cached_embedding(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[List[float]]:
        if not self.enabled or not text:
            return None
        try:
            return self.cache.get(self.generate_cache_key(text, metadata))
        except GracefulDegradationError as e:
            self._degraded("get", e)
            return None

    def cache_embedding(
        self,
        text: str,
        embedding: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None
    ) -> bool:
        if not self.enabled:
            return False
        try:
            return self.cache.set(self.generate_cache_key(text, metadata), list(embedding), ttl)
        except ValidationError as e:
            self.logger.warning("embedding_not_cached", reason=e.error_code, error=e.message)
            return False
        except GracefulDegradationError as e:
            self._degraded("set", e)
            return False

    def get_cached_embeddings_batch(
        self,
        texts: Sequence[str],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[int, List[float]]:
        """Cached embeddings keyed by position in ``texts``; empty texts are skipped."""
        if not self.enabled or not texts:
            return {}

        positions: Dict[str, List[int]] = {}
        for position, text in enumerate(texts):
            if text and text.strip():
                positions.setdefault(self.generate_cache_key(text, metadata), []).append(position)
        if not positions:
            return {}

        try:
            found = self.cache.get_multiple(list(positions))
        except GracefulDegradationError as e:
            self._degraded("get_multiple", e)
            return {}

        return {
            position: embedding
            for key, embedding in found.items()
            for position in positions[key]
        }

    def cache_embeddings_batch(
        self,
        texts: Sequence[str],
        embeddings: Sequence[Optional[Sequence[float]]],
        metadata: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None
    ) -> bool:
        if not self.enabled or not texts or len(texts) != len(embeddings):
            return False

        items = {
            self.generate_cache_key(text, metadata): list(embedding)
            for text, embedding in zip(texts, embeddings)
            if text and text.strip() and embedding
        }
        if not items:
            return True

        try:
            return self.cache.set_multiple(items, ttl)
        except ValidationError as e:
            self.logger.warning("embedding_batch_not_cached", reason=e.error_code, error=e.message, count=len(items))
            return False
        except GracefulDegradationError as e:
            self._degraded("set_multiple", e)
            return False

    def invalidate_cache(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        if not text:
            return False
        return self.cache.invalidate(self.generate_cache_key(text, metadata))

    def invalidate_by_metadata(self, metadata: Dict[str, Any]) -> int:
        """
        Keys are one-way hashes, so a model or version change clears the
        whole cache. Returns 1 when the cache was cleared, else 0.
        """
        self.logger.info("cache_invalidation_by_metadata", metadata=metadata)
        if "model" in metadata or "version" in metadata:
            return 1 if self.clear_all() else 0
        return 0

    def get_cache_statistics(self) -> Dict[str, Any]:
        stats = self.cache.get_stats()

        hits = stats.get("hits", 0)
        misses = stats.get("misses", 0)
        total_requests = hits + misses
        stats["total_requests"] = total_requests
        stats["enabled"] = self.enabled
        if total_requests:
            stats["hit_rate_percentage"] = round(hits / total_requests * 100, 2)
            stats["miss_rate_percentage"] = round(misses / total_requests * 100, 2)

        cost_config = config.cost_config
        tokens_saved = hits * cost_config["tokens_per_call"] * cost_config["token_ratio"]
        stats["estimated_tokens_saved"] = round(tokens_saved)
        stats["estimated_cost_saved_usd"] = round(tokens_saved / 1000 * cost_config["cost_per_1k_tokens"], 4)
        return stats

    def export_statistics(self) -> Dict[str, Any]:
        """Statistics in the export shape consumed by admin tooling."""
        stats = self.get_cache_statistics()
        return {
            "hits": stats.get("hits", 0),
            "misses": stats.get("misses", 0),
            "hit_rate": stats.get("hit_rate", 0.0),
            "total_entries": stats.get("total_entries", 0),
            "cache_size": stats.get("cache_size_bytes", 0),
            "estimated_savings": stats["estimated_cost_saved_usd"],
        }

    def warmup_cache(
        self,
        items: Iterable[str],
        generator: Callable[[str], Optional[Sequence[float]]],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, int]:
        """Generate and cache embeddings for texts not cached yet."""
        results = {"cached": 0, "failed": 0, "skipped": 0}
        items = list(items)
        if not items:
            return results

        self.logger.info("cache_warmup_started", count=len(items))
        for text in items:
            if not text or not text.strip() or self.get_cached_embedding(text, metadata) is not None:
                results["skipped"] += 1
                continue

            try:
                embedding = generator(text)
            except Exception as e:
                self.logger.error("cache_warmup_item_failed", error=str(e), error_type=type(e).__name__)
                results["failed"] += 1
                continue

            if embedding and self.cache_embedding(text, embedding, metadata):
                results["cached"] += 1
            else:
                results["failed"] += 1

        self.logger.info("cache_warmup_completed", **results)
        return results

    def perform_maintenance(self) -> Dict[str, Any]:
        self.logger.info("cache_maintenance_started")
        before = self.cache.get_stats().get("total_entries", 0)
        success = self.cache.maintenance()
        after = self.cache.get_stats().get("total_entries", 0)

        results = {
            "success": success,
            "entries_before": before,
            "entries_after": after,
            "entries_cleaned": before - after,
        }
        if success:
            self.logger.info("cache_maintenance_completed", **results)
        else:
            self.logger.error("cache_maintenance_failed")
        return results

    def clear_expired(self) -> Dict[str, Any]:
        return self.perform_maintenance()

    def clear_by_age(self, days: int) -> int:
        if days < 1:
            raise ValidationError("Age must be at least one day", field="days", value=days)
        removed = self.cache.clear_by_age(days * SECONDS_PER_DAY)
        self.logger.info("cache_cleared_by_age", days=days, removed=removed)
        return removed

    def optimize(self) -> Dict[str, Any]:
        results = self.perform_maintenance()
        results["statistics"] = self.export_statistics()
        return results

    def clear_all(self) -> bool:
        cleared = self.cache.clear()
        if cleared:
            self.logger.info("embedding_cache_cleared")
        else:
            self.logger.error("embedding_cache_clear_failed")
        return cleared

    def _degraded(self, operation: str, error: GracefulDegradationError) -> None:
        classified = error.classified
        if classified.should_log:
            self.logger.warning("cache_operation_degraded", operation=operation, kind=classified.kind.value)
        if self._issue_recorder is not None:
            self._issue_recorder(classified)
