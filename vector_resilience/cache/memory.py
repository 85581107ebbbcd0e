"""
In-process embedding cache.
Fast, bounded, lost on restart.
"""
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from vector_resilience.cache.base import EmbeddingCacheInterface
from vector_resilience.core.common import CommonValidators, get_service_logger
from vector_resilience.core.config import config
from vector_resilience.models.cache_entry import CacheEntry


class MemoryEmbeddingCache(EmbeddingCacheInterface):
    """
    Dictionary-backed cache with lazy TTL expiry and LRU eviction.

    When a write pushes the entry count over ``max_entries``, expired
    entries go first, then least recently used (ties broken by lowest hit
    count) until the count is at ``cleanup_threshold * max_entries``.
    """

    def __init__(
        self,
        default_ttl: Optional[int] = None,
        max_entries: Optional[int] = None,
        cleanup_threshold: Optional[float] = None,
        max_dimensions: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        cache_config = config.cache_config
        self.default_ttl = cache_config["default_ttl"] if default_ttl is None else default_ttl
        self.max_entries = max_entries or cache_config["max_entries"]
        self.cleanup_threshold = cleanup_threshold or cache_config["cleanup_threshold"]
        self.max_dimensions = max_dimensions or cache_config["max_dimensions"]
        self._clock = clock
        self.logger = get_service_logger("memory_embedding_cache")

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0, "evictions": 0}

    def get(self, text_hash: str) -> Optional[List[float]]:
        if not text_hash:
            return None
        CommonValidators.validate_hash(text_hash)

        with self._lock:
            entry = self._entries.get(text_hash)
            now = self._clock()
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(now):
                del self._entries[text_hash]
                self._stats["misses"] += 1
                return None

            entry.touch(now)
            self._stats["hits"] += 1
            return list(entry.embedding)

    def set(self, text_hash: str, embedding: List[float], ttl: Optional[int] = None) -> bool:
        CommonValidators.validate_hash(text_hash)
        values = CommonValidators.validate_embedding(embedding, self.max_dimensions)

        with self._lock:
            self._entries[text_hash] = self._new_entry(text_hash, values, ttl)
            self._stats["sets"] += 1
            if len(self._entries) > self.max_entries:
                self._evict()
        return True

    def get_multiple(self, text_hashes: Iterable[str]) -> Dict[str, List[float]]:
        results = {}
        for text_hash in text_hashes:
            embedding = self.get(text_hash)
            if embedding is not None:
                results[text_hash] = embedding
        return results

    def set_multiple(self, items: Dict[str, List[float]], ttl: Optional[int] = None) -> bool:
        if not items:
            return True

        # Validate everything before touching storage so a bad item leaves no partial batch.
        validated = {}
        for text_hash, embedding in items.items():
            CommonValidators.validate_hash(text_hash)
            validated[text_hash] = CommonValidators.validate_embedding(embedding, self.max_dimensions)

        with self._lock:
            for text_hash, values in validated.items():
                self._entries[text_hash] = self._new_entry(text_hash, values, ttl)
            self._stats["sets"] += len(validated)
            if len(self._entries) > self.max_entries:
                self._evict()
        return True

    def invalidate(self, text_hash: str) -> bool:
        if not CommonValidators.is_valid_hash(text_hash):
            return False
        with self._lock:
            if self._entries.pop(text_hash, None) is None:
                return False
            self._stats["invalidations"] += 1
            return True

    def clear(self) -> bool:
        with self._lock:
            self._stats["invalidations"] += len(self._entries)
            self._entries.clear()
        self.logger.info("memory_cache_cleared")
        return True

    def clear_by_age(self, max_age_seconds: int) -> int:
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [h for h, entry in self._entries.items() if entry.created_at < cutoff]
            for text_hash in stale:
                del self._entries[text_hash]
            self._stats["invalidations"] += len(stale)
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
            stats = dict(self._stats)

        created = [entry.created_at for entry in entries]
        stats.update({
            "backend": "memory",
            "total_entries": len(entries),
            "expired_entries": sum(1 for entry in entries if entry.is_expired(now)),
            "average_dimensions": round(sum(e.dimensions for e in entries) / len(entries), 2) if entries else 0,
            "oldest_entry": min(created) if created else None,
            "newest_entry": max(created) if created else None,
            "hit_rate": self.hit_rate(stats["hits"], stats["misses"]),
            "max_entries": self.max_entries,
            "cache_size_bytes": sum(entry.dimensions * 8 for entry in entries),
        })
        return stats

    def maintenance(self) -> bool:
        with self._lock:
            removed = self._remove_expired()
            if len(self._entries) > self.max_entries:
                self._evict()
        if removed:
            self.logger.info("memory_cache_expired_entries_removed", removed=removed)
        return True

    def _new_entry(self, text_hash: str, values: List[float], ttl: Optional[int]) -> CacheEntry:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        return CacheEntry(
            hash=text_hash,
            embedding=values,
            created_at=now,
            expires_at=now + ttl if ttl > 0 else None,
        )

    def _remove_expired(self) -> int:
        now = self._clock()
        expired = [h for h, entry in self._entries.items() if entry.is_expired(now)]
        for text_hash in expired:
            del self._entries[text_hash]
        return len(expired)

    def _evict(self) -> None:
        """Shrink to the cleanup threshold. Caller holds the lock."""
        target = max(1, int(self.max_entries * self.cleanup_threshold))
        before = len(self._entries)
        self._remove_expired()

        overflow = len(self._entries) - target
        if overflow > 0:
            victims = sorted(
                self._entries.values(),
                key=lambda entry: (entry.last_accessed, entry.hit_count)
            )[:overflow]
            for entry in victims:
                del self._entries[entry.hash]

        evicted = before - len(self._entries)
        self._stats["evictions"] += evicted
        self.logger.info("memory_cache_eviction_performed", evicted=evicted, remaining=len(self._entries))
