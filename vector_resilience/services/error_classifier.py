"""
Error classification service.
Turns raw provider, database and runtime failures into typed degradation
errors with a defined fallback strategy.
"""
import re
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from vector_resilience.core.common import get_service_logger
from vector_resilience.core.database import is_connection_error, is_transient_lock_error
from vector_resilience.core.exceptions import (
    ApiKeyExpiredError,
    BaseAppException,
    CacheDegradedError,
    DatabaseConnectionError,
    EmbeddingProviderError,
    EmbeddingServiceUnavailableError,
    GracefulDegradationError,
    InsufficientPermissionsError,
    MemoryExhaustedError,
    ProviderResponseError,
    QueryPerformanceDegradedError,
    QueueDegradedError,
    RateLimitExceededError,
    TemporaryApiError,
    TransactionFailedError,
    VectorIndexCorruptedError,
    VectorSearchDegradedError,
)
from vector_resilience.core.config import config
from vector_resilience.schemas.classification import ClassifiedError, Severity

DEFAULT_RETRY_AFTER = 60
TEMPORARY_STATUS_CODES = frozenset({500, 502, 503, 504})

Factory = Callable[[str, Dict[str, Any]], GracefulDegradationError]


def _service(context: Dict[str, Any]) -> str:
    return context.get("service_name", "Embedding Service")


# Storage-side patterns; never applied to failures raised by an embedding provider.
DATABASE_PATTERNS: List[Tuple[Pattern, Factory]] = [
    (
        re.compile(r"connection.*refused|host.*unreachable", re.IGNORECASE),
        lambda message, context: DatabaseConnectionError(message, context=context),
    ),
    (
        re.compile(r"transaction.*aborted|deadlock", re.IGNORECASE),
        lambda message, context: TransactionFailedError(message, context=context),
    ),
    (
        re.compile(r"query.*timeout|execution.*timeout", re.IGNORECASE),
        lambda message, context: QueryPerformanceDegradedError(
            context.get("query_time", 0),
            context.get("threshold", config.reporting_config["query_performance_threshold_ms"]),
            message=message,
            context=context,
        ),
    ),
]

# Resource failures; storage errors are matched against these before connectivity.
RESOURCE_PATTERNS: List[Tuple[Pattern, Factory]] = [
    (
        re.compile(r"memory.*exhausted|out.*of.*memory", re.IGNORECASE),
        lambda message, context: MemoryExhaustedError(
            message, context.get("memory_usage"), context.get("memory_limit"), context=context
        ),
    ),
    (
        re.compile(r"index.*corrupt|vector.*index.*error", re.IGNORECASE),
        lambda message, context: VectorIndexCorruptedError(message, context.get("index_name"), context=context),
    ),
]

MESSAGE_PATTERNS: List[Tuple[Pattern, Factory]] = [
    (
        re.compile(r"api.*key.*invalid|authentication.*failed", re.IGNORECASE),
        lambda message, context: ApiKeyExpiredError(_service(context), message=message, context=context),
    ),
    (
        re.compile(r"permission.*denied|access.*denied|unauthorized|forbidden", re.IGNORECASE),
        lambda message, context: InsufficientPermissionsError(
            message, context.get("required_permission"), context=context
        ),
    ),
] + RESOURCE_PATTERNS + [
    (
        re.compile(
            r"dns.*resolution|name.*resolution|ssl.*certificate|tls.*handshake|"
            r"network.*timeout|connection.*timeout|curl error|no route to host",
            re.IGNORECASE
        ),
        lambda message, context: EmbeddingServiceUnavailableError(
            _service(context), message=message, context=context
        ),
    ),
]

# Substring fallbacks checked after status codes. Provider failures only get the first group.
PROVIDER_KEYWORD_FALLBACKS: List[Tuple[Tuple[str, ...], Factory]] = [
    (
        ("rate limit",),
        lambda message, context: RateLimitExceededError(
            context.get("retry_after", DEFAULT_RETRY_AFTER), _service(context), context=context
        ),
    ),
    (
        ("connection refused", "connection reset"),
        lambda message, context: EmbeddingServiceUnavailableError(
            _service(context), message=message, context=context
        ),
    ),
]

KEYWORD_FALLBACKS: List[Tuple[Tuple[str, ...], Factory]] = PROVIDER_KEYWORD_FALLBACKS + [
    (
        ("vector", "embedding"),
        lambda message, context: VectorSearchDegradedError(message, context=context),
    ),
    (
        ("queue",),
        lambda message, context: QueueDegradedError(message, context=context),
    ),
    (
        ("cache",),
        lambda message, context: CacheDegradedError(message, context=context),
    ),
]


class ErrorClassifier:
    """
    Deterministic mapping from a raw failure plus context hints to a
    :class:`ClassifiedError`.

    Precedence: already-typed degradation errors, Python memory errors,
    malformed provider responses, SQLAlchemy lock, resource and
    connectivity errors, HTTP status 401/403/429, message patterns,
    status 500-504 and timeouts, keyword fallbacks. Remaining storage
    OperationalErrors read as an unreachable database; anything else is
    treated as the embedding service being unavailable.

    Recognized context hints: ``status_code``, ``retry_after``,
    ``retry_attempts``, ``service_name``, ``index_name``, ``query_time``,
    ``threshold``, ``memory_usage``, ``memory_limit``.
    """

    def __init__(self):
        self.logger = get_service_logger("error_classifier")

    def classify(self, raw: BaseException, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
        classified = self.create_exception(raw, context).classified
        if classified.should_log:
            self._log(classified)
        return classified

    def create_exception(
        self,
        raw: BaseException,
        context: Optional[Dict[str, Any]] = None
    ) -> GracefulDegradationError:
        """Typed degradation error for ``raw``, chained to it via ``__cause__``."""
        if isinstance(raw, GracefulDegradationError):
            return raw

        context = dict(context or {})
        status_code = self._status_code(raw, context)
        if status_code is not None:
            context.setdefault("status_code", status_code)
        retry_after = self._retry_after(raw, context)
        if retry_after is not None:
            context.setdefault("retry_after", retry_after)
        context.setdefault("exception_type", type(raw).__name__)

        error = self._match(raw, str(raw), status_code, context)
        if error.retry_attempts is None and "retry_attempts" in context:
            error.retry_attempts = context["retry_attempts"]
        error.__cause__ = raw
        return error

    def _match(
        self,
        raw: BaseException,
        message: str,
        status_code: Optional[int],
        context: Dict[str, Any]
    ) -> GracefulDegradationError:
        if isinstance(raw, MemoryError):
            return MemoryExhaustedError(
                message or "Out of memory", context.get("memory_usage"), context.get("memory_limit"), context=context
            )

        if isinstance(raw, ProviderResponseError):
            return EmbeddingServiceUnavailableError(_service(context), message=message, context=context)

        if isinstance(raw, SQLAlchemyError):
            if is_transient_lock_error(raw):
                return TransactionFailedError(message, context=context)
            for pattern, factory in RESOURCE_PATTERNS:
                if pattern.search(message):
                    return factory(message, context)
            if is_connection_error(raw):
                return DatabaseConnectionError(message, context=context)

        if status_code == 401:
            return ApiKeyExpiredError(_service(context), message=message or None, context=context)
        if status_code == 403:
            return InsufficientPermissionsError(message, context.get("required_permission"), context=context)
        if status_code == 429:
            return RateLimitExceededError(
                context.get("retry_after", DEFAULT_RETRY_AFTER), _service(context), context=context
            )

        patterns = MESSAGE_PATTERNS
        if not isinstance(raw, EmbeddingProviderError):
            patterns = DATABASE_PATTERNS + MESSAGE_PATTERNS
        for pattern, factory in patterns:
            if pattern.search(message):
                return factory(message, context)

        if status_code in TEMPORARY_STATUS_CODES or isinstance(raw, TimeoutError):
            return TemporaryApiError(
                message or "Request timed out",
                retry_attempts=context.get("retry_attempts"),
                context=context
            )

        if isinstance(raw, ConnectionError):
            return EmbeddingServiceUnavailableError(_service(context), message=message or None, context=context)

        if isinstance(raw, OperationalError):
            return DatabaseConnectionError(message, context=context)

        fallbacks = PROVIDER_KEYWORD_FALLBACKS if isinstance(raw, EmbeddingProviderError) else KEYWORD_FALLBACKS
        lowered = message.lower()
        for keywords, factory in fallbacks:
            if any(keyword in lowered for keyword in keywords):
                return factory(message, context)

        return EmbeddingServiceUnavailableError(_service(context), message=message or None, context=context)

    @staticmethod
    def _status_code(raw: BaseException, context: Dict[str, Any]) -> Optional[int]:
        if context.get("status_code") is not None:
            return int(context["status_code"])
        if isinstance(raw, EmbeddingProviderError):
            return raw.provider_status
        # Application exceptions carry our own response status, not an upstream one.
        if isinstance(raw, BaseAppException):
            return None
        status_code = getattr(raw, "status_code", None)
        if status_code is None:
            status_code = getattr(getattr(raw, "response", None), "status_code", None)
        return status_code if isinstance(status_code, int) else None

    @staticmethod
    def _retry_after(raw: BaseException, context: Dict[str, Any]) -> Optional[int]:
        if context.get("retry_after") is not None:
            return int(context["retry_after"])
        retry_after = getattr(raw, "retry_after", None)
        return int(retry_after) if retry_after is not None else None

    def _log(self, classified: ClassifiedError) -> None:
        log = self.logger.error if classified.severity == Severity.CRITICAL else self.logger.warning
        log(
            "error_classified",
            kind=classified.kind.value,
            fallback_strategy=classified.fallback_strategy.value,
            severity=classified.severity.value,
            impact_scope=classified.impact_scope.value,
            exception_type=classified.exception_type,
            error=classified.message,
        )


error_classifier = ErrorClassifier()
