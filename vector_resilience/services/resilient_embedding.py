"""
Resilient embedding generation.
Cache first, then the provider behind a circuit breaker with bounded
exponential backoff; every failure is classified and returned as a
Degraded or Failed result instead of being raised.
"""
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vector_resilience.cache.manager import EmbeddingCacheManager
from vector_resilience.core.common import BaseService
from vector_resilience.core.exceptions import (
    EmbeddingProviderError,
    PartialBatchFailureError,
    ProviderResponseError,
    RateLimitExceededError,
    ValidationError,
)
from vector_resilience.core.reliability import (
    CircuitBreaker,
    CircuitBreakerConfig,
    PerformanceMonitor,
    RateLimiter,
    performance_monitor,
)
from vector_resilience.schemas.classification import ClassifiedError, FallbackStrategy
from vector_resilience.schemas.results import Degraded, Failed, Ok, Result
from vector_resilience.services.degradation_messages import DegradationTracker
from vector_resilience.services.embedding_providers import EmbeddingProvider
from vector_resilience.services.error_classifier import ErrorClassifier

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_BACKOFF_SECONDS = 60.0


def is_retryable(error: BaseException) -> bool:
    """Rate limits, 5xx responses, timeouts and dropped connections; never a malformed response."""
    if isinstance(error, ProviderResponseError):
        return False
    if isinstance(error, EmbeddingProviderError):
        return error.provider_status is None or error.provider_status in RETRYABLE_STATUS_CODES
    return isinstance(error, (TimeoutError, ConnectionError))


class ResilientEmbeddingService(BaseService):
    """
    Embedding generation that never raises for provider trouble.

    ``generate_embedding`` returns ``Ok(vector)``, ``Degraded`` when the
    text can be handled without a vector, or ``Failed`` when the failure
    needs escalation, such as an expired key.
    ``generate_embeddings`` returns one slot per input; slots that could
    not be embedded are None and the result is ``Degraded``.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache_manager: Optional[EmbeddingCacheManager] = None,
        classifier: Optional[ErrorClassifier] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        tracker: Optional[DegradationTracker] = None,
        monitor: Optional[PerformanceMonitor] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        cache_metadata: Optional[Dict[str, Any]] = None,
        **overrides
    ):
        super().__init__("resilient_embedding")
        resilience = self.config.resilience_config
        self.provider = provider
        self.cache_manager = cache_manager
        self.classifier = classifier or ErrorClassifier()
        self.tracker = tracker
        self.monitor = monitor or performance_monitor
        self._sleep = sleep

        self.max_retries = overrides.get("max_retries", resilience["max_retries"])
        self.base_delay = overrides.get("base_retry_delay_ms", resilience["base_retry_delay_ms"]) / 1000.0
        self.batch_size = overrides.get("batch_size", resilience["batch_size"])
        self.individual_fallback = overrides.get("individual_fallback", resilience["individual_fallback"])
        self.individual_delay = overrides.get("individual_delay_ms", resilience["individual_delay_ms"]) / 1000.0
        self.timeout = overrides.get("timeout", resilience["timeout"])

        requests_per_minute = resilience["requests_per_minute"]
        if rate_limiter is None and requests_per_minute > 0:
            rate_limiter = RateLimiter(requests_per_minute, 60.0)
        self.rate_limiter = rate_limiter

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            f"{provider.name}_embeddings",
            CircuitBreakerConfig(
                failure_threshold=resilience["breaker_failure_threshold"],
                reset_timeout=resilience["breaker_reset_timeout"],
                half_open_max_calls=2
            )
        )
        self.cache_metadata = cache_metadata or {
            "provider": provider.name,
            "model": getattr(provider, "model", provider.name),
            "dimension": provider.dimension,
        }
        self._stats = {"api_calls": 0, "cache_hits": 0, "retries": 0, "failures": 0, "generated": 0}

    def generate_embedding(self, text: str) -> Result:
        if not text or not text.strip():
            raise ValidationError("Text cannot be empty for embedding generation", field="text")

        cached = self._cache_lookup([text]).get(0)
        if cached is not None:
            return Ok(cached)

        try:
            embedding = self._call_provider([text])[0]
        except ValidationError:
            raise
        except Exception as e:
            classified = self._classify(e, {"operation": "generate_embedding"})
            if classified.escalation_required:
                return Failed(classified)
            return Degraded(classified.fallback_strategy, classified.user_message, None, (classified,))

        self._cache_store([text], [embedding])
        return Ok(embedding)

    def generate_embeddings(self, texts: Sequence[str]) -> Result:
        texts = list(texts)
        if not texts:
            return Ok([])
        for text in texts:
            if not text or not text.strip():
                raise ValidationError("Text cannot be empty for embedding generation", field="texts")

        embeddings: List[Optional[List[float]]] = [None] * len(texts)
        for position, embedding in self._cache_lookup(texts).items():
            embeddings[position] = embedding

        pending = [i for i, embedding in enumerate(embeddings) if embedding is None]
        chunk_size = max(1, min(self.batch_size, self.provider.max_batch_size))
        issues: List[ClassifiedError] = []
        failed: Dict[int, str] = {}

        for start in range(0, len(pending), chunk_size):
            positions = pending[start:start + chunk_size]
            chunk = [texts[i] for i in positions]
            try:
                generated = self._call_provider(chunk)
            except ValidationError:
                raise
            except Exception as e:
                classified = self._classify(e, {"operation": "generate_embeddings", "batch_size": len(chunk)})
                if classified.escalation_required:
                    return Failed(classified)
                issues.append(classified)
                if self.individual_fallback and len(chunk) > 1:
                    generated, chunk_issues = self._generate_individually(chunk)
                    issues.extend(chunk_issues)
                else:
                    generated = [None] * len(chunk)

            new_texts, new_embeddings = [], []
            for position, text, embedding in zip(positions, chunk, generated):
                if embedding is None:
                    failed[position] = issues[-1].user_message if issues else "embedding unavailable"
                    continue
                embeddings[position] = embedding
                new_texts.append(text)
                new_embeddings.append(embedding)
            self._cache_store(new_texts, new_embeddings)

        if not failed:
            return Ok(embeddings)

        if len(failed) == len(texts):
            primary = issues[0]
            return Degraded(
                primary.fallback_strategy,
                primary.user_message,
                embeddings,
                tuple(self._unique(issues))
            )

        successful = {i: True for i, embedding in enumerate(embeddings) if embedding is not None}
        partial = PartialBatchFailureError(successful, failed, operation="generate_embeddings")
        partial_issue = self._classify(partial)
        return Degraded(
            FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS,
            partial.message,
            embeddings,
            (partial_issue, *self._unique(issues))
        )

    def is_available(self) -> bool:
        return self.provider.is_available() and self.circuit_breaker.is_available()

    def get_status(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.name,
            "dimension": self.provider.dimension,
            "available": self.is_available(),
            "circuit_breaker": self.circuit_breaker.get_status(),
            "rate_limiter": self.rate_limiter.get_status() if self.rate_limiter else None,
            "stats": dict(self._stats),
        }

    def _generate_individually(self, texts: List[str]) -> Tuple[List[Optional[List[float]]], List[ClassifiedError]]:
        """Per-item fallback for a chunk whose batch request failed."""
        results: List[Optional[List[float]]] = []
        issues: List[ClassifiedError] = []
        for index, text in enumerate(texts):
            if index and self.individual_delay:
                self._sleep(self.individual_delay)
            try:
                results.append(self._call_provider([text])[0])
            except ValidationError:
                raise
            except Exception as e:
                issues.append(self._classify(e, {"operation": "generate_embedding_individual"}))
                results.append(None)
        return results, issues

    def _call_provider(self, texts: List[str]) -> List[List[float]]:
        if self.rate_limiter is not None and not self.rate_limiter.acquire():
            raise RateLimitExceededError(
                retry_after=self.rate_limiter.seconds_until_available(),
                service_name=self.provider.name
            )
        embeddings = self.circuit_breaker.call(self._call_with_retries, texts)
        self._stats["generated"] += len(embeddings)
        return embeddings

    def _call_with_retries(self, texts: List[str]) -> List[List[float]]:
        attempt = 0
        while True:
            self._stats["api_calls"] += 1
            try:
                return self.monitor.run_with_timeout(
                    "embedding_provider_call",
                    self.provider.generate_embeddings,
                    texts,
                    timeout=self.timeout
                )
            except Exception as e:
                if attempt >= self.max_retries or not is_retryable(e):
                    raise
                delay = self._backoff_delay(attempt, e)
                attempt += 1
                self._stats["retries"] += 1
                self.logger.warning(
                    "embedding_request_retrying",
                    provider=self.provider.name,
                    attempt=attempt,
                    delay=delay,
                    error=str(e)
                )
                self._sleep(delay)

    def _backoff_delay(self, attempt: int, error: BaseException) -> float:
        delay = self.base_delay * (2 ** attempt)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return min(delay, MAX_BACKOFF_SECONDS)

    def _classify(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
        self._stats["failures"] += 1
        context = dict(context or {})
        context.setdefault("service_name", self.provider.name)
        classified = self.classifier.classify(error, context)
        if self.tracker is not None:
            self.tracker.record(classified)
        return classified

    def _cache_lookup(self, texts: List[str]) -> Dict[int, List[float]]:
        if self.cache_manager is None:
            return {}
        found = self.cache_manager.get_cached_embeddings_batch(texts, self.cache_metadata)
        self._stats["cache_hits"] += len(found)
        return found

    def _cache_store(self, texts: List[str], embeddings: List[List[float]]) -> None:
        if self.cache_manager is not None and texts:
            self.cache_manager.cache_embeddings_batch(texts, embeddings, self.cache_metadata)

    @staticmethod
    def _unique(issues: List[ClassifiedError]) -> List[ClassifiedError]:
        seen = {}
        for issue in issues:
            seen.setdefault(issue.kind, issue)
        return list(seen.values())
