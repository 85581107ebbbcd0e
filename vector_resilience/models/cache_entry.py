"""
Embedding cache entry model.
The dataclass is what caches hand around; the table builder defines the
persistent backend's storage.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import Column, Integer, LargeBinary, MetaData, String, Table, Index


@dataclass
class CacheEntry:
    """One cached embedding keyed by its content hash."""
    hash: str
    embedding: List[float]
    created_at: float
    expires_at: Optional[float] = None  # None means never expires
    last_accessed: float = 0.0
    hit_count: int = 0
    dimensions: int = field(init=False)

    def __post_init__(self):
        self.dimensions = len(self.embedding)
        if not self.last_accessed:
            self.last_accessed = self.created_at

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def touch(self, now: float) -> None:
        """Record a read."""
        self.last_accessed = now
        self.hit_count += 1


def build_cache_table(metadata: MetaData, table_name: str = "embedding_cache") -> Table:
    """
    Persistent cache table. Timestamps are unix seconds; ``expires`` is
    NULL for entries that never expire.
    """
    return Table(
        table_name,
        metadata,
        Column("text_hash", String(64), primary_key=True),
        Column("embedding_data", LargeBinary, nullable=False),
        Column("dimensions", Integer, nullable=False),
        Column("created", Integer, nullable=False),
        Column("last_accessed", Integer, nullable=False),
        Column("expires", Integer, nullable=True),
        Column("hit_count", Integer, nullable=False, default=0),
        Index(f"{table_name}_expires_idx", "expires"),
        Index(f"{table_name}_last_accessed_idx", "last_accessed"),
    )
