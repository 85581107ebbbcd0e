"""
Vector index inspection endpoints.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from vector_resilience.api.dependencies import ServiceContainer, get_services
from vector_resilience.core.exceptions import ConfigurationError
from vector_resilience.services.vector_index_manager import VectorIndexManager

router = APIRouter(prefix="/indexes")


def _index_manager(services: ServiceContainer) -> VectorIndexManager:
    if services.index_manager is None:
        raise ConfigurationError("Vector indexes are not configured", field="DATABASE_URL")
    return services.index_manager


@router.get("/{index_name}/health")
def index_health(index_name: str, services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    health = _index_manager(services).check_index_health(services.descriptor(index_name))
    return health.to_dict()


@router.get("/{index_name}/statistics")
def index_statistics(index_name: str, services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    manager = _index_manager(services)
    descriptor = services.descriptor(index_name)
    return {
        "statistics": manager.get_index_statistics(descriptor),
        "performance": manager.get_performance_metrics(descriptor),
    }
