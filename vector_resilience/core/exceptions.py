"""
Custom exceptions for the application.
Follows fail-fast principle with clear, actionable error messages.

Two families live here:
- validation/configuration/storage errors raised directly by components
- the graceful-degradation taxonomy, one subclass per failure kind, each
  carrying its fallback strategy and end-user message
"""
from typing import Optional, Dict, Any, Callable, TypeVar, List
from functools import wraps
from fastapi import status
from fastapi.responses import JSONResponse

from vector_resilience.core.logging import get_logger
from vector_resilience.schemas.classification import (
    ClassifiedError,
    ErrorKind,
    FallbackStrategy,
    impact_scope_for,
    severity_for,
)

# Type hint for decorated functions
F = TypeVar('F', bound=Callable[..., Any])

logger = get_logger(__name__)


class BaseAppException(Exception):
    """Base exception for all application exceptions."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BaseAppException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class ValidationError(BaseAppException):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message,
            error_code=type(self).error_code,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InvalidHashError(ValidationError):
    """Cache key is not a 64 character hex digest."""
    error_code = "INVALID_HASH"


class EmptyEmbeddingError(ValidationError):
    error_code = "EMPTY_EMBEDDING"


class EmbeddingTooLargeError(ValidationError):
    error_code = "EMBEDDING_TOO_LARGE"


class NonNumericValueError(ValidationError):
    """An embedding element is not a finite number."""
    error_code = "NON_NUMERIC_VALUE"


class VectorDimensionError(ValidationError):
    error_code = "VECTOR_DIMENSION_MISMATCH"


class UnsupportedDistanceMetricError(ValidationError):
    error_code = "UNSUPPORTED_DISTANCE_METRIC"


class InvalidIndexConfigurationError(ValidationError):
    error_code = "INVALID_INDEX_CONFIGURATION"


class NotFoundError(BaseAppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            message=f"{resource_type} with ID '{resource_id}' not found",
            error_code="NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id)}
        )


class VectorStoreError(BaseAppException):
    """Raised when vector storage operations fail."""

    def __init__(self, message: str, operation: Optional[str] = None):
        details = {"operation": operation} if operation else {}
        super().__init__(
            message=message,
            error_code="VECTOR_STORE_ERROR",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class ExternalServiceError(BaseAppException):
    """Raised when external service calls fail."""

    def __init__(self, service_name: str, message: str, status_code: Optional[int] = None):
        details = {"service": service_name}
        if status_code:
            details["service_status_code"] = status_code

        super().__init__(
            message=f"External service error ({service_name}): {message}",
            error_code="EXTERNAL_SERVICE_ERROR",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class EmbeddingProviderError(ExternalServiceError):
    """
    Provider-specific failure normalized to an HTTP-like status.

    ``provider_status`` is the status reported by the provider (None for
    transport failures); ``retry_after`` comes from a Retry-After header.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        provider_status: Optional[int] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(provider, message, status_code=provider_status)
        self.provider = provider
        self.provider_status = provider_status
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class ProviderTimeoutError(EmbeddingProviderError):
    """Provider call exceeded its configured timeout."""

    def __init__(self, provider: str, timeout: float):
        super().__init__(
            provider,
            f"Request timed out after {timeout}s",
            provider_status=status.HTTP_504_GATEWAY_TIMEOUT
        )
        self.timeout = timeout


class ProviderResponseError(EmbeddingProviderError):
    """Provider answered, but with the wrong number or shape of embeddings. Not retried."""

    def __init__(self, provider: str, message: str):
        super().__init__(provider, message, provider_status=status.HTTP_502_BAD_GATEWAY)


# ============================================================================
# GRACEFUL DEGRADATION TAXONOMY
# ============================================================================

class GracefulDegradationError(BaseAppException):
    """
    Base for failures that have a defined fallback strategy.

    Subclasses pin ``kind``, ``fallback_strategy`` and a default user-facing
    message; instances expose an immutable :class:`ClassifiedError` through
    :attr:`classified`.
    """

    kind: ErrorKind = ErrorKind.EMBEDDING_SERVICE_UNAVAILABLE
    fallback_strategy: FallbackStrategy = FallbackStrategy.TEXT_SEARCH_ONLY
    default_error_code: str = "GRACEFUL_DEGRADATION"
    default_status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
    default_user_message: str = "Some features are temporarily unavailable."

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        should_log: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code=self.default_error_code,
            status_code=self.default_status_code,
            details=details
        )
        self.user_message = user_message or self.default_user_message
        self.context = dict(context or {})
        self.retry_after = retry_after
        self.retry_attempts = retry_attempts
        self._should_log = should_log
        self._classified: Optional[ClassifiedError] = None

    @property
    def should_log(self) -> bool:
        if self._should_log is not None:
            return self._should_log
        return self._default_should_log()

    def _default_should_log(self) -> bool:
        return True

    @property
    def classified(self) -> ClassifiedError:
        if self._classified is None:
            original = self.__cause__ if self.__cause__ is not None else self
            self._classified = ClassifiedError(
                kind=self.kind,
                fallback_strategy=self.fallback_strategy,
                severity=severity_for(self.kind),
                impact_scope=impact_scope_for(self.kind),
                should_log=self.should_log,
                user_message=self.user_message,
                message=self.message,
                error_code=self.error_code,
                status_code=self.status_code,
                exception_type=type(original).__name__,
                retry_after=self.retry_after,
                retry_attempts=self.retry_attempts,
                context=self.context,
                error=self,
            )
        return self._classified


class DatabaseConnectionError(GracefulDegradationError):
    kind = ErrorKind.DATABASE_CONNECTION
    fallback_strategy = FallbackStrategy.TEXT_SEARCH_ONLY
    default_error_code = "DATABASE_CONNECTION"
    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_user_message = (
        "Search is temporarily running with limited features. Please try again in a few minutes."
    )


class MemoryExhaustedError(GracefulDegradationError):
    kind = ErrorKind.MEMORY_EXHAUSTED
    fallback_strategy = FallbackStrategy.BATCH_SIZE_REDUCTION
    default_error_code = "MEMORY_EXHAUSTED"
    default_status_code = status.HTTP_507_INSUFFICIENT_STORAGE
    default_user_message = (
        "The system is processing a large amount of content. Work will continue in smaller batches."
    )

    def __init__(self, message: str, usage: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.usage = usage
        self.limit = limit
        if usage is not None:
            self.context.setdefault("memory_usage", usage)
        if limit is not None:
            self.context.setdefault("memory_limit", limit)


class VectorIndexCorruptedError(GracefulDegradationError):
    kind = ErrorKind.VECTOR_INDEX_CORRUPTED
    fallback_strategy = FallbackStrategy.TEXT_SEARCH_WITH_REINDEX_QUEUE
    default_error_code = "VECTOR_INDEX_CORRUPTED"
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_user_message = "The search index is being repaired. Basic search is available in the meantime."

    def __init__(self, message: str, index_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.index_name = index_name
        if index_name:
            self.context.setdefault("index_name", index_name)


class ApiKeyExpiredError(GracefulDegradationError):
    kind = ErrorKind.API_KEY_EXPIRED
    fallback_strategy = FallbackStrategy.TEXT_SEARCH_ONLY
    default_error_code = "API_KEY_EXPIRED"
    default_status_code = status.HTTP_401_UNAUTHORIZED
    default_user_message = "AI-powered search is temporarily unavailable. Using traditional search instead."

    def __init__(self, service_name: str = "Embedding Service", message: Optional[str] = None, **kwargs):
        super().__init__(message or f"API key expired for service: {service_name}", **kwargs)
        self.service_name = service_name
        self.context.setdefault("service_name", service_name)


class InsufficientPermissionsError(GracefulDegradationError):
    kind = ErrorKind.INSUFFICIENT_PERMISSIONS
    fallback_strategy = FallbackStrategy.LIMITED_FUNCTIONALITY
    default_error_code = "INSUFFICIENT_PERMISSIONS"
    default_status_code = status.HTTP_403_FORBIDDEN
    default_user_message = "Some search features are not available with the current access level."

    def __init__(self, message: str, required_permission: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.required_permission = required_permission
        if required_permission:
            self.context.setdefault("required_permission", required_permission)


class EmbeddingServiceUnavailableError(GracefulDegradationError):
    kind = ErrorKind.EMBEDDING_SERVICE_UNAVAILABLE
    fallback_strategy = FallbackStrategy.TEXT_SEARCH_ONLY
    default_error_code = "EMBEDDING_SERVICE_UNAVAILABLE"
    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_user_message = "AI-powered search is temporarily unavailable. Using traditional search instead."

    def __init__(self, service_name: str = "Embedding Service", message: Optional[str] = None, **kwargs):
        super().__init__(message or f"{service_name} is unavailable", **kwargs)
        self.service_name = service_name
        self.context.setdefault("service_name", service_name)


class TemporaryApiError(GracefulDegradationError):
    kind = ErrorKind.TEMPORARY_API_FAILURE
    fallback_strategy = FallbackStrategy.RETRY_WITH_BACKOFF
    default_error_code = "TEMPORARY_API_FAILURE"
    default_status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_user_message = "The search service is having a temporary problem. It will retry automatically."


class RateLimitExceededError(GracefulDegradationError):
    kind = ErrorKind.RATE_LIMIT
    fallback_strategy = FallbackStrategy.RATE_LIMIT_BACKOFF
    default_error_code = "RATE_LIMIT_EXCEEDED"
    default_status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_user_message = "Search is experiencing high demand. Please wait a moment and try again."

    def __init__(
        self,
        retry_after: int = 60,
        service_name: str = "Embedding Service",
        message: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message or f"Rate limit exceeded for {service_name}, retry after {retry_after} seconds",
            retry_after=retry_after,
            **kwargs
        )
        self.service_name = service_name
        self.context.setdefault("service_name", service_name)


class VectorSearchDegradedError(GracefulDegradationError):
    """Planned or expected vector search degradation; kept out of logs."""
    kind = ErrorKind.VECTOR_SEARCH_DEGRADED
    fallback_strategy = FallbackStrategy.TEXT_SEARCH_FALLBACK
    default_error_code = "VECTOR_SEARCH_DEGRADED"
    default_status_code = status.HTTP_200_OK
    default_user_message = "Search is running in compatibility mode. Results may be less precise than usual."

    def __init__(self, reason: str = "Vector search is temporarily degraded", **kwargs):
        super().__init__(reason, **kwargs)
        self.reason = reason

    def _default_should_log(self) -> bool:
        return False


class PartialBatchFailureError(GracefulDegradationError):
    kind = ErrorKind.PARTIAL_BATCH_FAILURE
    fallback_strategy = FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS
    default_error_code = "PARTIAL_BATCH_FAILURE"
    default_status_code = status.HTTP_206_PARTIAL_CONTENT
    default_user_message = "Some items could not be processed and will be retried later."

    def __init__(
        self,
        successful_items: Dict[Any, Any],
        failed_items: Dict[Any, str],
        operation: str = "batch operation",
        **kwargs
    ):
        total = len(successful_items) + len(failed_items)
        super().__init__(
            f"Partial failure in {operation}: {len(failed_items)} of {total} items failed",
            **kwargs
        )
        self.successful_items = successful_items
        self.failed_items = failed_items
        self.operation = operation
        self.context.setdefault("operation", operation)
        self.context.setdefault("successful_count", len(successful_items))
        self.context.setdefault("failed_count", len(failed_items))

    @property
    def success_rate(self) -> float:
        total = len(self.successful_items) + len(self.failed_items)
        return len(self.successful_items) / total * 100 if total else 0.0

    def _default_should_log(self) -> bool:
        return self.success_rate < 50.0


class CacheDegradedError(GracefulDegradationError):
    kind = ErrorKind.CACHE_DEGRADED
    fallback_strategy = FallbackStrategy.DIRECT_PROCESSING
    default_error_code = "CACHE_DEGRADED"
    default_status_code = status.HTTP_200_OK
    default_user_message = "Responses may be slightly slower than usual."

    def _default_should_log(self) -> bool:
        return False


class QueueDegradedError(GracefulDegradationError):
    kind = ErrorKind.QUEUE_DEGRADED
    fallback_strategy = FallbackStrategy.SYNCHRONOUS_PROCESSING
    default_error_code = "QUEUE_DEGRADED"
    default_status_code = status.HTTP_200_OK
    default_user_message = "Background processing is paused. Updates are being processed directly."


class ConfigurationDegradedError(GracefulDegradationError):
    kind = ErrorKind.CONFIGURATION_DEGRADED
    fallback_strategy = FallbackStrategy.BASIC_FUNCTIONALITY_ONLY
    default_error_code = "CONFIGURATION_DEGRADED"
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_user_message = "Advanced search features are unavailable. Basic search still works."


class CircuitBreakerOpenError(GracefulDegradationError):
    kind = ErrorKind.CIRCUIT_BREAKER_OPEN
    fallback_strategy = FallbackStrategy.CIRCUIT_BREAKER_FALLBACK
    default_error_code = "CIRCUIT_BREAKER_OPEN"
    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_user_message = "A search service is recovering from errors. Basic search is available meanwhile."

    def __init__(self, service_name: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Circuit breaker open for {service_name}", **kwargs)
        self.service_name = service_name
        self.context.setdefault("service_name", service_name)


class TransactionFailedError(GracefulDegradationError):
    kind = ErrorKind.TRANSACTION_FAILED
    fallback_strategy = FallbackStrategy.READ_ONLY_MODE
    default_error_code = "TRANSACTION_FAILED"
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_user_message = "Changes cannot be saved right now. Search remains available."


class QueryPerformanceDegradedError(GracefulDegradationError):
    kind = ErrorKind.QUERY_PERFORMANCE_DEGRADED
    fallback_strategy = FallbackStrategy.SIMPLIFIED_SEARCH_WITH_CACHING
    default_error_code = "QUERY_PERFORMANCE_DEGRADED"
    default_status_code = status.HTTP_200_OK
    default_user_message = "Search is slower than usual. Simplified results are shown to keep things responsive."

    def __init__(self, query_time: float, threshold: float = 5000, message: Optional[str] = None, **kwargs):
        super().__init__(
            message or f"Query took {query_time:.0f}ms (threshold {threshold:.0f}ms)",
            **kwargs
        )
        self.query_time = query_time
        self.threshold = threshold
        self.context.setdefault("query_time_ms", query_time)
        self.context.setdefault("threshold_ms", threshold)

    def _default_should_log(self) -> bool:
        return self.query_time > self.threshold * 2


# ============================================================================
# COMMON ERROR HANDLING PATTERNS
# ============================================================================

def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None
) -> JSONResponse:
    """
    Centralized error response factory.
    Creates consistent JSON error responses for the management API.
    """
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": error_code,
                "message": message,
                "details": details or {},
                "correlation_id": correlation_id
            }
        }
    )


def handle_service_error(
    operation: str,
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    raise_as: Optional[type] = None
) -> None:
    """
    Consolidated error handling pattern for services.
    Logs the failure, then raises ``raise_as`` (default VectorStoreError).
    """
    error_context = dict(context or {})
    error_context.update({
        "operation": operation,
        "error": str(error),
        "error_type": type(error).__name__
    })

    logger.error(f"{operation}_failed", **error_context, exc_info=True)

    if raise_as:
        raise raise_as(f"{operation} failed: {str(error)}") from error
    raise VectorStoreError(f"{operation} failed: {str(error)}", operation) from error


def with_error_handling(
    operation: str,
    context: Optional[Dict[str, Any]] = None,
    raise_as: Optional[type] = None,
    reraise_if: Optional[tuple] = None
):
    """
    Decorator to add consistent error handling to service methods.

    Args:
        operation: Description of operation for logging
        context: Additional context for logging
        raise_as: Exception class to raise on error
        reraise_if: Tuple of exception types to reraise without modification
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if reraise_if and isinstance(e, reraise_if):
                    raise
                handle_service_error(operation, e, context, raise_as)

        return wrapper

    return decorator


def degradation_error_types() -> List[type]:
    """All concrete degradation exception classes."""
    return [
        DatabaseConnectionError,
        MemoryExhaustedError,
        VectorIndexCorruptedError,
        ApiKeyExpiredError,
        InsufficientPermissionsError,
        EmbeddingServiceUnavailableError,
        TemporaryApiError,
        RateLimitExceededError,
        VectorSearchDegradedError,
        PartialBatchFailureError,
        CacheDegradedError,
        QueueDegradedError,
        ConfigurationDegradedError,
        CircuitBreakerOpenError,
        TransactionFailedError,
        QueryPerformanceDegradedError,
    ]
