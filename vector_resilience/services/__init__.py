"""Services layer: classification, reporting, embeddings and vector indexes."""

from .error_classifier import ErrorClassifier, error_classifier
from .degradation_messages import AudienceContext, DegradationMessageService, DegradationTracker
from .embedding_providers import EmbeddingProvider, create_embedding_provider
from .resilient_embedding import ResilientEmbeddingService
from .index_health import IndexHealthEvaluator
from .vector_index_manager import VectorIndexManager
from .hybrid_query import HybridQueryBuilder

__all__ = [
    "ErrorClassifier",
    "error_classifier",
    "AudienceContext",
    "DegradationMessageService",
    "DegradationTracker",
    "EmbeddingProvider",
    "create_embedding_provider",
    "ResilientEmbeddingService",
    "IndexHealthEvaluator",
    "VectorIndexManager",
    "HybridQueryBuilder"
]
