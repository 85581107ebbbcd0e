"""
Two-level embedding cache: in-process in front of persistent.
"""
import threading
from typing import Any, Dict, Iterable, List, Optional

from vector_resilience.cache.base import EmbeddingCacheInterface
from vector_resilience.core.common import get_service_logger


class TieredEmbeddingCache(EmbeddingCacheInterface):
    """
    Reads the fast tier first and falls back to the durable tier, promoting
    hits upward. Writes go to both tiers; the write only counts as a
    success when the durable tier accepted it.
    """

    def __init__(self, fast: EmbeddingCacheInterface, durable: EmbeddingCacheInterface):
        self.fast = fast
        self.durable = durable
        self.logger = get_service_logger("tiered_embedding_cache")
        self._stats = {"hits": 0, "misses": 0, "promotions": 0}
        self._lock = threading.Lock()

    def get(self, text_hash: str) -> Optional[List[float]]:
        embedding = self.fast.get(text_hash)
        if embedding is None and text_hash:
            embedding = self.durable.get(text_hash)
            if embedding is not None:
                self.fast.set(text_hash, embedding)
                self._count("promotions")

        self._count("hits" if embedding is not None else "misses")
        return embedding

    def set(self, text_hash: str, embedding: List[float], ttl: Optional[int] = None) -> bool:
        self.fast.set(text_hash, embedding, ttl)
        return self.durable.set(text_hash, embedding, ttl)

    def get_multiple(self, text_hashes: Iterable[str]) -> Dict[str, List[float]]:
        hashes = [h for h in dict.fromkeys(text_hashes) if h]
        found = self.fast.get_multiple(hashes)

        remaining = [h for h in hashes if h not in found]
        if remaining:
            promoted = self.durable.get_multiple(remaining)
            if promoted:
                self.fast.set_multiple(promoted)
                self._count("promotions", len(promoted))
                self.logger.debug("tiered_cache_promoted", count=len(promoted))
                found.update(promoted)

        self._count("hits", len(found))
        self._count("misses", len(hashes) - len(found))
        return found

    def set_multiple(self, items: Dict[str, List[float]], ttl: Optional[int] = None) -> bool:
        self.fast.set_multiple(items, ttl)
        return self.durable.set_multiple(items, ttl)

    def invalidate(self, text_hash: str) -> bool:
        in_fast = self.fast.invalidate(text_hash)
        in_durable = self.durable.invalidate(text_hash)
        return in_fast or in_durable

    def clear(self) -> bool:
        fast_cleared = self.fast.clear()
        return self.durable.clear() and fast_cleared

    def clear_by_age(self, max_age_seconds: int) -> int:
        self.fast.clear_by_age(max_age_seconds)
        return self.durable.clear_by_age(max_age_seconds)

    def get_stats(self) -> Dict[str, Any]:
        fast_stats = self.fast.get_stats()
        durable_stats = self.durable.get_stats()
        with self._lock:
            counters = dict(self._stats)

        stats = dict(durable_stats)
        stats.update(counters)
        stats.update({
            "backend": "tiered",
            "sets": durable_stats.get("sets", 0),
            "hit_rate": self.hit_rate(counters["hits"], counters["misses"]),
            "tiers": {"fast": fast_stats, "durable": durable_stats},
        })
        return stats

    def maintenance(self) -> bool:
        fast_ok = self.fast.maintenance()
        return self.durable.maintenance() and fast_ok

    def _count(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[key] += amount
