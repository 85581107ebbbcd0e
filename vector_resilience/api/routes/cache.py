"""
Embedding cache management endpoints.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from vector_resilience.api.dependencies import ServiceContainer, get_services
from vector_resilience.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/cache")


@router.get("/stats")
def cache_statistics(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Full cache statistics including estimated savings."""
    return services.cache_manager.get_cache_statistics()


@router.get("/export")
def export_statistics(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return services.cache_manager.export_statistics()


@router.post("/clear")
def clear_cache(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    logger.info("cache_clear_requested")
    return {"success": services.cache_manager.clear_all()}


@router.post("/clear-expired")
def clear_expired(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return services.cache_manager.clear_expired()


@router.post("/clear-by-age")
def clear_by_age(
    days: int = Query(..., description="Remove entries created more than this many days ago"),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    removed = services.cache_manager.clear_by_age(days)
    return {"success": True, "days": days, "removed": removed}


@router.post("/optimize")
def optimize_cache(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Maintenance sweep followed by a statistics snapshot."""
    return services.cache_manager.optimize()
