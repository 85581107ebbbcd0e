"""
Service wiring for the management API.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Request

from vector_resilience.cache.manager import EmbeddingCacheManager
from vector_resilience.core.database import DatabaseManager
from vector_resilience.models.vector_record import IndexDescriptor
from vector_resilience.services.degradation_messages import DegradationMessageService, DegradationTracker
from vector_resilience.services.vector_index_manager import VectorIndexManager


@dataclass
class ServiceContainer:
    """Components the routes operate on; one instance per application."""
    cache_manager: EmbeddingCacheManager
    tracker: DegradationTracker
    message_service: DegradationMessageService
    index_manager: Optional[VectorIndexManager] = None
    database: Optional[DatabaseManager] = None
    descriptors: Dict[str, IndexDescriptor] = field(default_factory=dict)

    def descriptor(self, index_name: str) -> IndexDescriptor:
        """Registered descriptor for ``index_name``, or one with configured defaults."""
        return self.descriptors.get(index_name) or IndexDescriptor(index_name)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
