"""
Classified error value types.
Closed enums for failure kinds and fallback strategies plus the immutable
ClassifiedError record produced by the error classifier.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class ErrorKind(str, Enum):
    """Closed taxonomy of classified failures."""
    DATABASE_CONNECTION = "database_connection"
    MEMORY_EXHAUSTED = "memory_exhausted"
    VECTOR_INDEX_CORRUPTED = "vector_index_corrupted"
    API_KEY_EXPIRED = "api_key_expired"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    EMBEDDING_SERVICE_UNAVAILABLE = "embedding_service_unavailable"
    TEMPORARY_API_FAILURE = "temporary_api_failure"
    RATE_LIMIT = "rate_limit"
    VECTOR_SEARCH_DEGRADED = "vector_search_degraded"
    TRANSACTION_FAILED = "transaction_failed"
    QUERY_PERFORMANCE_DEGRADED = "query_performance_degraded"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    CACHE_DEGRADED = "cache_degraded"
    QUEUE_DEGRADED = "queue_degraded"
    CONFIGURATION_DEGRADED = "configuration_degraded"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"


class FallbackStrategy(str, Enum):
    """Named degraded behaviors adopted when a dependency fails."""
    TEXT_SEARCH_ONLY = "text_search_only"
    BATCH_SIZE_REDUCTION = "batch_size_reduction"
    TEXT_SEARCH_WITH_REINDEX_QUEUE = "text_search_with_reindex_queue"
    LIMITED_FUNCTIONALITY = "limited_functionality"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RATE_LIMIT_BACKOFF = "rate_limit_backoff"
    TEXT_SEARCH_FALLBACK = "text_search_fallback"
    READ_ONLY_MODE = "read_only_mode"
    SIMPLIFIED_SEARCH_WITH_CACHING = "simplified_search_with_caching"
    CIRCUIT_BREAKER_FALLBACK = "circuit_breaker_fallback"
    DIRECT_PROCESSING = "direct_processing"
    SYNCHRONOUS_PROCESSING = "synchronous_processing"
    BASIC_FUNCTIONALITY_ONLY = "basic_functionality_only"
    CONTINUE_WITH_PARTIAL_RESULTS = "continue_with_partial_results"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ImpactScope(str, Enum):
    USER = "USER"
    SERVER = "SERVER"
    SYSTEM = "SYSTEM"


SEVERITY_BY_KIND: Dict[ErrorKind, Severity] = {
    ErrorKind.DATABASE_CONNECTION: Severity.CRITICAL,
    ErrorKind.MEMORY_EXHAUSTED: Severity.HIGH,
    ErrorKind.VECTOR_INDEX_CORRUPTED: Severity.HIGH,
    ErrorKind.API_KEY_EXPIRED: Severity.HIGH,
    ErrorKind.TRANSACTION_FAILED: Severity.HIGH,
    ErrorKind.CONFIGURATION_DEGRADED: Severity.HIGH,
    ErrorKind.VECTOR_SEARCH_DEGRADED: Severity.MEDIUM,
    ErrorKind.CACHE_DEGRADED: Severity.LOW,
    ErrorKind.QUEUE_DEGRADED: Severity.LOW,
}

IMPACT_BY_KIND: Dict[ErrorKind, ImpactScope] = {
    ErrorKind.DATABASE_CONNECTION: ImpactScope.SYSTEM,
    ErrorKind.CONFIGURATION_DEGRADED: ImpactScope.SYSTEM,
    ErrorKind.PARTIAL_BATCH_FAILURE: ImpactScope.USER,
    ErrorKind.QUERY_PERFORMANCE_DEGRADED: ImpactScope.USER,
}

# Kinds that resolve on their own; they never require escalation.
TRANSIENT_KINDS = frozenset({
    ErrorKind.TEMPORARY_API_FAILURE,
    ErrorKind.RATE_LIMIT,
    ErrorKind.VECTOR_SEARCH_DEGRADED,
    ErrorKind.CACHE_DEGRADED,
    ErrorKind.PARTIAL_BATCH_FAILURE,
})


def severity_for(kind: ErrorKind) -> Severity:
    return SEVERITY_BY_KIND.get(kind, Severity.MEDIUM)


def impact_scope_for(kind: ErrorKind) -> ImpactScope:
    return IMPACT_BY_KIND.get(kind, ImpactScope.SERVER)


@dataclass(frozen=True)
class ClassifiedError:
    """
    Immutable outcome of classifying a raw failure.

    ``error`` keeps the typed exception so callers that must propagate the
    failure can ``raise classified.error``.
    """
    kind: ErrorKind
    fallback_strategy: FallbackStrategy
    severity: Severity
    impact_scope: ImpactScope
    should_log: bool
    user_message: str
    message: str
    error_code: str
    status_code: int
    exception_type: str
    retry_after: Optional[int] = None
    retry_attempts: Optional[int] = None
    context: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: float = field(default_factory=time.time)
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))

    @property
    def notification_level(self) -> str:
        """How loudly end users should be told about this failure."""
        if not self.should_log:
            return "info"
        return {
            Severity.CRITICAL: "error",
            Severity.HIGH: "warning",
            Severity.MEDIUM: "info",
            Severity.LOW: "none",
        }[self.severity]

    @property
    def escalation_required(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL) and self.kind not in TRANSIENT_KINDS

    def to_dict(self, include_context: bool = False) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "fallback_strategy": self.fallback_strategy.value,
            "severity": self.severity.value,
            "impact_scope": self.impact_scope.value,
            "should_log": self.should_log,
            "user_message": self.user_message,
            "error_code": self.error_code,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "retry_attempts": self.retry_attempts,
            "notification_level": self.notification_level,
            "escalation_required": self.escalation_required,
            "occurred_at": self.occurred_at,
        }
        if include_context:
            data["message"] = self.message
            data["exception_type"] = self.exception_type
            data["context"] = dict(self.context)
        return data
