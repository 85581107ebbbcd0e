"""
Management API for the embedding cache, vector indexes and degradation status.
"""
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from vector_resilience.api.dependencies import ServiceContainer
from vector_resilience.api.routes import cache, health, indexes
from vector_resilience.cache.manager import EmbeddingCacheManager, create_cache_backend
from vector_resilience.core.config import settings, config
from vector_resilience.core.database import DatabaseManager, get_database_manager
from vector_resilience.core.exceptions import BaseAppException, GracefulDegradationError, create_error_response
from vector_resilience.core.logging import get_logger, log_request_error, set_correlation_id
from vector_resilience.models.vector_record import IndexDescriptor
from vector_resilience.services.degradation_messages import DegradationMessageService, DegradationTracker
from vector_resilience.services.vector_index_manager import VectorIndexManager

logger = get_logger(__name__)


def build_services(
    cache_manager: Optional[EmbeddingCacheManager] = None,
    index_manager: Optional[VectorIndexManager] = None,
    tracker: Optional[DegradationTracker] = None,
    database: Optional[DatabaseManager] = None,
    descriptors: Optional[Dict[str, IndexDescriptor]] = None
) -> ServiceContainer:
    """Wire the configured components, reusing any that are passed in."""
    tracker = tracker or DegradationTracker()
    if database is None and settings.DATABASE_URL:
        database = get_database_manager()
    if cache_manager is None:
        cache_manager = EmbeddingCacheManager(
            create_cache_backend(database=database),
            issue_recorder=tracker.record
        )
    if index_manager is None and database is not None:
        index_manager = VectorIndexManager(database, tracker=tracker)

    return ServiceContainer(
        cache_manager=cache_manager,
        tracker=tracker,
        message_service=DegradationMessageService(),
        index_manager=index_manager,
        database=database,
        descriptors=dict(descriptors or {})
    )


def create_app(
    services: Optional[ServiceContainer] = None,
    validate_config: bool = True
) -> FastAPI:
    """
    Application factory. Tests pass a prepared :class:`ServiceContainer`;
    otherwise components are built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_startup", version=settings.APP_VERSION)
        if validate_config:
            settings.validate_critical_startup_config()
            logger.info("configuration_validated", provider=settings.EMBEDDING_PROVIDER)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()

        yield

        logger.info("application_shutdown")
        database = app.state.services.database
        if database is not None:
            database.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Embedding cache, vector index and degradation management",
        docs_url=f"{settings.API_PREFIX}/docs",
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        lifespan=lifespan
    )
    app.state.services = services

    @app.exception_handler(BaseAppException)
    async def handle_app_exception(request: Request, exc: BaseAppException):
        log_request_error(logger, "application_error", request, error_code=exc.error_code, message=exc.message)
        # End users only ever see the degradation's user message.
        message = exc.user_message if isinstance(exc, GracefulDegradationError) else exc.message
        return create_error_response(
            exc.status_code,
            exc.error_code,
            message,
            exc.details,
            getattr(request.state, "correlation_id", None)
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": " -> ".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            }
            for error in exc.errors()
        ]
        log_request_error(logger, "validation_error", request, errors=errors)
        return create_error_response(
            422,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": errors},
            getattr(request.state, "correlation_id", None)
        )

    @app.middleware("http")
    async def add_correlation_and_timing(request: Request, call_next):
        start_time = time.time()
        correlation_id = set_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["x-correlation-id"] = correlation_id
        response.headers["X-Process-Time"] = f"{round((time.time() - start_time) * 1000, 2)}ms"
        return response

    app.include_router(health.router, prefix=settings.API_PREFIX, tags=["health"])
    app.include_router(cache.router, prefix=settings.API_PREFIX, tags=["cache"])
    app.include_router(indexes.router, prefix=settings.API_PREFIX, tags=["indexes"])
    return app


if __name__ == "__main__":
    import uvicorn

    api_config = config.api_config
    uvicorn.run(
        create_app(),
        host=api_config["host"],
        port=api_config["port"],
        log_level=settings.LOG_LEVEL.lower(),
    )
