"""
Shared test fixtures and configuration for pytest.
"""

import hashlib
import os
import threading

# Settings are read once at import time; pin a small, offline configuration
# before anything from the package is imported.
os.environ.setdefault("EMBEDDING_PROVIDER", "local")
os.environ.setdefault("EMBEDDING_DIMENSION", "8")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("DATABASE_URL", None)

from unittest.mock import MagicMock

import pytest

from vector_resilience.cache.manager import EmbeddingCacheManager
from vector_resilience.cache.memory import MemoryEmbeddingCache
from vector_resilience.core.database import DatabaseManager
from vector_resilience.core.reliability import PerformanceMonitor
from vector_resilience.models.vector_record import IndexDescriptor
from vector_resilience.services.degradation_messages import DegradationTracker
from vector_resilience.services.embedding_providers import LocalHashingEmbeddingProvider
from vector_resilience.services.error_classifier import ErrorClassifier
from vector_resilience.services.resilient_embedding import ResilientEmbeddingService
from vector_resilience.services.vector_index_manager import VectorIndexManager

DIMENSION = 8


# ============================================================================
# Clocks and helpers
# ============================================================================

class FakeClock:
    """Manually advanced clock for TTL, window and breaker tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def unit_vector(position: int, dimension: int = DIMENSION):
    """Basis vector with a single 1.0 at ``position``."""
    vector = [0.0] * dimension
    vector[position] = 1.0
    return vector


def text_hash(seed: str) -> str:
    """Deterministic 64 character cache key."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def basis():
    return unit_vector


@pytest.fixture
def make_hash():
    return text_hash


def read_while_writing(cache, key, first, second, writes=200, readers=2):
    """
    Flip ``key`` between ``first`` and ``second`` on one thread while
    ``readers`` threads keep reading it. Returns every value read and any
    exception raised on a worker thread.
    """
    assert cache.set(key, first) is True
    done = threading.Event()
    seen, errors = [], []

    def writer():
        try:
            for i in range(writes):
                if not cache.set(key, second if i % 2 == 0 else first):
                    errors.append(AssertionError(f"write {i} failed"))
        except Exception as e:
            errors.append(e)
        finally:
            done.set()

    def reader():
        try:
            while True:
                seen.append(cache.get(key))
                if done.is_set():
                    return
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(readers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return seen, errors


@pytest.fixture
def concurrent_reads():
    return read_while_writing


# ============================================================================
# Storage fixtures
# ============================================================================

@pytest.fixture
def database():
    """In-memory SQLite database shared across connections."""
    manager = DatabaseManager("sqlite://")
    yield manager
    manager.close()


@pytest.fixture
def memory_cache(clock):
    return MemoryEmbeddingCache(default_ttl=3600, max_entries=100, cleanup_threshold=0.8, clock=clock)


@pytest.fixture
def tracker(clock):
    return DegradationTracker(window=900, clock=clock)


@pytest.fixture
def cache_manager(memory_cache, tracker):
    return EmbeddingCacheManager(memory_cache, enabled=True, issue_recorder=tracker.record)


# ============================================================================
# Embedding fixtures
# ============================================================================

@pytest.fixture
def local_provider():
    return LocalHashingEmbeddingProvider(dimension=DIMENSION)


@pytest.fixture
def mock_provider():
    """Provider double whose ``generate_embeddings`` tests program directly."""
    provider = MagicMock()
    provider.name = "mock"
    provider.model = "mock-model"
    provider.dimension = DIMENSION
    provider.max_batch_size = 100
    provider.is_available.return_value = True
    provider.generate_embeddings.side_effect = lambda texts: [unit_vector(0) for _ in texts]
    return provider


@pytest.fixture
def sleeps():
    """Records every delay requested instead of sleeping."""
    return []


@pytest.fixture
def embedding_service(local_provider, cache_manager, tracker, sleeps):
    return ResilientEmbeddingService(
        local_provider,
        cache_manager=cache_manager,
        classifier=ErrorClassifier(),
        tracker=tracker,
        monitor=PerformanceMonitor(),
        sleep=sleeps.append,
        max_retries=2,
        base_retry_delay_ms=100,
        individual_delay_ms=0,
        timeout=5.0
    )


# ============================================================================
# Vector index fixtures
# ============================================================================

@pytest.fixture
def descriptor():
    return IndexDescriptor("articles", dimension=DIMENSION, metric="cosine")


@pytest.fixture
def index_manager(database, embedding_service, tracker):
    """Index manager on SQLite with memory checks disabled."""
    return VectorIndexManager(
        database,
        embedding_service=embedding_service,
        tracker=tracker,
        monitor=PerformanceMonitor(),
        memory=MagicMock(),
        sleep=lambda seconds: None,
        batch_size=1000
    )


@pytest.fixture
def created_index(index_manager, descriptor):
    index_manager.create_vector_index(descriptor)
    return descriptor
