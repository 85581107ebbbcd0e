"""
Health check and degradation status endpoints.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel

from vector_resilience.api.dependencies import ServiceContainer, get_services
from vector_resilience.core.config import settings
from vector_resilience.core.logging import get_logger, get_utc_timestamp

logger = get_logger(__name__)

router = APIRouter()

# Track application start time
APP_START_TIME = datetime.now(timezone.utc)


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    uptime_seconds: float
    checks: Dict[str, Dict[str, Any]]


def get_uptime_seconds() -> float:
    return (datetime.now(timezone.utc) - APP_START_TIME).total_seconds()


def check_cache_health(services: ServiceContainer) -> Dict[str, Any]:
    stats = services.cache_manager.get_cache_statistics()
    return settings.create_health_response(
        "Embedding cache",
        True,
        {
            "enabled": stats["enabled"],
            "backend": stats.get("backend"),
            "total_entries": stats.get("total_entries", 0),
            "hit_rate": stats.get("hit_rate", 0.0),
        }
    )


def check_database_health(services: ServiceContainer) -> Dict[str, Any]:
    if services.database is None:
        return {"status": "not_configured", "message": "Database not configured", "details": {}}
    return services.database.health_check()


@router.get("/health", response_model=HealthStatus, tags=["health"])
def health_check(response: Response, services: ServiceContainer = Depends(get_services)):
    """
    Component health. Responds 503 when any configured component is unhealthy.
    """
    checks = {
        "database": check_database_health(services),
        "embedding_provider": settings.validate_embedding_health(),
        "cache": check_cache_health(services),
    }

    unhealthy = [name for name, check in checks.items() if check.get("status") == "unhealthy"]
    if unhealthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning("health_check_failed", unhealthy=unhealthy)

    return HealthStatus(
        status="degraded" if unhealthy else "healthy",
        timestamp=get_utc_timestamp(),
        version=settings.APP_VERSION,
        uptime_seconds=get_uptime_seconds(),
        checks=checks
    )


@router.get("/status", tags=["health"])
def degradation_status(
    audience: Optional[str] = Query(None, description="'admin' adds the administrator summary"),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """User-facing status report over the currently active issues."""
    issues = services.tracker.active_issues()
    report = services.message_service.generate_status_report(issues)
    if audience == "admin":
        report["admin_summary"] = services.message_service.get_admin_summary(issues)
    return report
