"""Embedding cache backends and the cache manager."""

from .base import EmbeddingCacheInterface
from .memory import MemoryEmbeddingCache
from .persistent import DatabaseEmbeddingCache
from .tiered import TieredEmbeddingCache
from .manager import EmbeddingCacheManager, create_cache_backend, generate_cache_key

__all__ = [
    "EmbeddingCacheInterface",
    "MemoryEmbeddingCache",
    "DatabaseEmbeddingCache",
    "TieredEmbeddingCache",
    "EmbeddingCacheManager",
    "create_cache_backend",
    "generate_cache_key"
]
