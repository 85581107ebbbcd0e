"""
Embedding cache contract shared by every backend.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional


class EmbeddingCacheInterface(ABC):
    """
    Cache of embeddings keyed by a 64 character SHA-256 hex digest.

    ``get`` raises InvalidHashError for malformed non-empty keys and returns
    None for missing or expired entries. ``set`` raises EmptyEmbeddingError,
    EmbeddingTooLargeError or NonNumericValueError for invalid vectors and
    returns False when storage fails. A ``ttl`` of 0 never expires.
    """

    @abstractmethod
    def get(self, text_hash: str) -> Optional[List[float]]:
        """Cached embedding for ``text_hash`` or None."""

    @abstractmethod
    def set(self, text_hash: str, embedding: List[float], ttl: Optional[int] = None) -> bool:
        """Store (or overwrite) an embedding."""

    @abstractmethod
    def get_multiple(self, text_hashes: Iterable[str]) -> Dict[str, List[float]]:
        """Found, unexpired subset of ``text_hashes``."""

    @abstractmethod
    def set_multiple(self, items: Dict[str, List[float]], ttl: Optional[int] = None) -> bool:
        """Store all items or none of them."""

    @abstractmethod
    def invalidate(self, text_hash: str) -> bool:
        """Remove one entry; True if it existed."""

    @abstractmethod
    def clear(self) -> bool:
        """Remove every entry."""

    @abstractmethod
    def clear_by_age(self, max_age_seconds: int) -> int:
        """Remove entries created more than ``max_age_seconds`` ago; returns count removed."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and entry aggregates."""

    @abstractmethod
    def maintenance(self) -> bool:
        """Sweep expired entries and enforce the entry ceiling."""

    @staticmethod
    def hit_rate(hits: int, misses: int) -> float:
        total = hits + misses
        return round(hits / total * 100, 2) if total else 0.0
