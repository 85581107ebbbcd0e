"""
Reliability primitives shared by the embedding service, the database
manager and the vector index manager: memory guard, operation timing with
hard timeouts, circuit breaker, token bucket and backup checksums.
"""
import hashlib
import os
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, Any, Optional, List, Callable, Sequence

import psutil

from vector_resilience.core.common import get_service_logger
from vector_resilience.core.config import config
from vector_resilience.core.exceptions import (
    CircuitBreakerOpenError,
    MemoryExhaustedError,
)

BYTES_PER_MB = 1024 * 1024
RECENT_WINDOW = 100


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass(frozen=True)
class MemoryStats:
    """Snapshot of system and process memory."""
    current_usage_mb: float
    peak_usage_mb: float
    available_mb: float
    usage_percentage: float
    system_total_mb: float
    process_memory_mb: float
    is_critical: bool = False
    is_warning: bool = False

    @property
    def headroom_mb(self) -> float:
        """Memory a single operation may claim; 20% of what is free stays reserved."""
        return self.available_mb * 0.8

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["headroom_mb"] = round(self.headroom_mb, 2)
        return data


@dataclass
class PerformanceMetrics:
    """Timing aggregates for one named operation."""
    operation_count: int = 0
    total_time: float = 0.0
    min_time: float = float('inf')
    max_time: float = 0.0
    timeout_count: int = 0
    error_count: int = 0
    recent_times: deque = field(default_factory=lambda: deque(maxlen=RECENT_WINDOW), repr=False)

    @property
    def avg_time(self) -> float:
        return self.total_time / self.operation_count if self.operation_count else 0.0

    @property
    def success_rate(self) -> float:
        if not self.operation_count:
            return 100.0
        return (self.operation_count - self.error_count) / self.operation_count * 100

    @property
    def p95_time(self) -> float:
        """95th percentile over the most recent calls."""
        if not self.recent_times:
            return 0.0
        ordered = sorted(self.recent_times)
        return ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_count": self.operation_count,
            "total_time": round(self.total_time, 6),
            "avg_time": round(self.avg_time, 6),
            "min_time": self.min_time if self.operation_count else 0.0,
            "max_time": self.max_time,
            "p95_time": round(self.p95_time, 6),
            "timeout_count": self.timeout_count,
            "error_count": self.error_count,
            "success_rate": round(self.success_rate, 2),
        }


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_calls: int = 3


class MemoryManager:
    """
    Guards batch operations against memory exhaustion.

    Vector inserts and rebuilds call :meth:`enforce_memory_limits` with the
    estimated footprint of the next chunk before building it, and shrink
    their chunk with :meth:`recommended_batch_size` after a MemoryExhausted
    classification. Thresholds default to the ``MEMORY_*`` settings.
    """

    def __init__(
        self,
        warning_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
        max_memory_mb: Optional[float] = None
    ):
        memory_config = config.memory_config
        self.warning_threshold = (
            warning_threshold if warning_threshold is not None else memory_config["warning_percent"]
        )
        self.critical_threshold = (
            critical_threshold if critical_threshold is not None else memory_config["critical_percent"]
        )
        self.max_memory_mb = max_memory_mb if max_memory_mb is not None else memory_config["process_limit_mb"]
        self.logger = get_service_logger("memory_manager")
        self._peak_usage = 0.0

    def get_memory_stats(self) -> MemoryStats:
        memory = psutil.virtual_memory()
        process_memory = psutil.Process().memory_info().rss / BYTES_PER_MB
        self._peak_usage = max(self._peak_usage, process_memory)

        over_process_limit = self.max_memory_mb is not None and process_memory >= self.max_memory_mb
        stats = MemoryStats(
            current_usage_mb=memory.used / BYTES_PER_MB,
            peak_usage_mb=self._peak_usage,
            available_mb=memory.available / BYTES_PER_MB,
            usage_percentage=memory.percent,
            system_total_mb=memory.total / BYTES_PER_MB,
            process_memory_mb=process_memory,
            is_critical=memory.percent >= self.critical_threshold or over_process_limit,
            is_warning=memory.percent >= self.warning_threshold
        )

        if stats.is_critical:
            self.logger.error("memory_critical", **stats.to_dict())
        elif stats.is_warning:
            self.logger.warning("memory_high", usage_pct=stats.usage_percentage, available_mb=stats.available_mb)
        return stats

    @staticmethod
    def estimate_batch_memory_mb(record_count: int, dimension: int) -> float:
        """Footprint of ``record_count`` float64 vectors plus per-row overhead."""
        return record_count * (dimension * 8 + 256) / BYTES_PER_MB

    def check_memory_available(self, required_mb: float) -> bool:
        stats = self.get_memory_stats()
        if stats.is_critical or required_mb > stats.headroom_mb:
            self.logger.warning(
                "memory_insufficient_for_operation",
                required_mb=required_mb,
                headroom_mb=stats.headroom_mb
            )
            return False
        return True

    def enforce_memory_limits(self, operation: str, required_mb: float = 0.0) -> bool:
        """
        Raises:
            MemoryExhaustedError: memory is critical or ``required_mb`` exceeds headroom
        """
        stats = self.get_memory_stats()
        if stats.is_critical or required_mb > stats.headroom_mb:
            raise MemoryExhaustedError(
                f"Operation '{operation}' blocked: memory usage at "
                f"{stats.usage_percentage:.1f}% ({stats.available_mb:.0f}MB available)",
                usage=int(stats.process_memory_mb * BYTES_PER_MB),
                limit=int((self.max_memory_mb or stats.system_total_mb) * BYTES_PER_MB),
                context={"operation": operation, "required_mb": required_mb}
            )
        return True

    @staticmethod
    def recommended_batch_size(current_batch_size: int, minimum: int = 10) -> int:
        """Halved chunk size for the batch_size_reduction fallback."""
        return max(minimum, current_batch_size // 2)


class PerformanceMonitor:
    """
    Per-operation timings for provider calls, searches and inserts, and a
    hard timeout for blocking provider calls.

    A warning is logged when the recent p95 of an operation drifts past
    ``slow_factor`` times its lifetime average.
    """

    def __init__(self, default_timeout: float = 30.0, slow_factor: float = 2.0):
        self.default_timeout = default_timeout
        self.slow_factor = slow_factor
        self.logger = get_service_logger("performance_monitor")
        self._metrics: Dict[str, PerformanceMetrics] = defaultdict(PerformanceMetrics)
        self._lock = threading.Lock()

    @contextmanager
    def track_operation(self, operation: str):
        start_time = time.perf_counter()
        try:
            yield
        except Exception:
            self._record(operation, time.perf_counter() - start_time, success=False)
            raise
        self._record(operation, time.perf_counter() - start_time)

    def run_with_timeout(
        self,
        operation: str,
        func: Callable[..., Any],
        *args,
        timeout: Optional[float] = None,
        **kwargs
    ) -> Any:
        """
        Run ``func`` in a worker thread and wait at most ``timeout`` seconds.

        Raises:
            TimeoutError: the call did not finish in time; the worker is
                abandoned and its eventual result discarded
        """
        timeout = timeout or self.default_timeout
        start_time = time.perf_counter()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"timeout-{operation}")
        future = executor.submit(func, *args, **kwargs)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            elapsed = time.perf_counter() - start_time
            self._record(operation, elapsed, success=False, timed_out=True)
            self.logger.error("operation_timeout", operation=operation, timeout=timeout, elapsed=elapsed)
            raise TimeoutError(f"Operation '{operation}' timed out after {timeout}s")
        except Exception:
            self._record(operation, time.perf_counter() - start_time, success=False)
            raise
        finally:
            executor.shutdown(wait=False)

        self._record(operation, time.perf_counter() - start_time)
        return result

    def _record(self, operation: str, elapsed: float, success: bool = True, timed_out: bool = False) -> None:
        with self._lock:
            metrics = self._metrics[operation]
            metrics.operation_count += 1
            metrics.total_time += elapsed
            metrics.min_time = min(metrics.min_time, elapsed)
            metrics.max_time = max(metrics.max_time, elapsed)
            metrics.timeout_count += int(timed_out)
            metrics.error_count += int(not success)
            metrics.recent_times.append(elapsed)
            recent_p95, lifetime_avg = metrics.p95_time, metrics.avg_time
            enough_samples = len(metrics.recent_times) >= RECENT_WINDOW // 10

        if enough_samples and recent_p95 > lifetime_avg * self.slow_factor:
            self.logger.warning(
                "operation_slowing_down",
                operation=operation,
                recent_p95=recent_p95,
                lifetime_avg=lifetime_avg
            )

    def get_metrics(self, operation: str) -> PerformanceMetrics:
        return self._metrics[operation]

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


class CircuitBreaker:
    """
    Circuit breaker for provider and database calls.

    Prevents cascading failures by rejecting calls to a failing service
    until ``reset_timeout`` has elapsed, then letting a limited number of
    trial calls through.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.logger = get_service_logger(f"circuit_breaker_{name}")
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._half_open_calls = 0
        self._lock = threading.Lock()

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function call through circuit breaker."""
        with self._lock:
            if self._should_reject_call():
                raise CircuitBreakerOpenError(
                    self.name,
                    context={"failure_count": self._failure_count}
                )
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls += 1

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def is_available(self) -> bool:
        """True when a call would currently be let through."""
        with self._lock:
            return not self._should_reject_call()

    def _should_reject_call(self) -> bool:
        """Determine if call should be rejected based on circuit state."""
        if self._state == CircuitState.CLOSED:
            return False

        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time >= self.config.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self.logger.info("circuit_breaker_half_open", name=self.name)
                return False
            return True

        return self._half_open_calls >= self.config.half_open_max_calls

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self.logger.info("circuit_breaker_closed", name=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self.logger.warning("circuit_breaker_reopened", name=self.name)

            elif self._failure_count >= self.config.failure_threshold:
                if self._state != CircuitState.OPEN:
                    self.logger.error(
                        "circuit_breaker_opened",
                        name=self.name,
                        failure_count=self._failure_count
                    )
                self._state = CircuitState.OPEN

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    def get_status(self) -> Dict[str, Any]:
        """Get circuit breaker status."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "half_open_calls": self._half_open_calls
        }


class RateLimiter:
    """
    Rate limiter with token bucket algorithm.

    Keeps provider requests under the account quota.
    """

    def __init__(self, max_calls: int, time_window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_calls = max_calls
        self.time_window = time_window
        self.logger = get_service_logger("rate_limiter")

        self._tokens = float(max_calls)
        self._clock = clock
        self._last_refill = clock()
        self._lock = threading.Lock()

    def acquire(self, tokens: int = 1) -> bool:
        """Acquire tokens from the rate limiter."""
        with self._lock:
            now = self._clock()
            elapsed = now - self._last_refill
            if elapsed > 0:
                self._tokens = min(
                    float(self.max_calls),
                    self._tokens + elapsed * (self.max_calls / self.time_window)
                )
                self._last_refill = now

            if self._tokens >= tokens:
                self._tokens -= tokens
                return True

            self.logger.warning(
                "rate_limit_exceeded",
                requested=tokens,
                available=int(self._tokens),
                max_calls=self.max_calls,
                window=self.time_window
            )
            return False

    def seconds_until_available(self, tokens: int = 1) -> int:
        with self._lock:
            missing = max(0.0, tokens - self._tokens)
        return int(missing * self.time_window / self.max_calls) + 1

    def get_status(self) -> Dict[str, Any]:
        return {
            "max_calls": self.max_calls,
            "time_window": self.time_window,
            "available_tokens": int(self._tokens),
            "last_refill": self._last_refill
        }


class IndexValidator:
    """
    Checksums and dimension checks for vector data and index backups.
    """

    def __init__(self):
        self.logger = get_service_logger("index_validator")

    @staticmethod
    def calculate_checksum(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def calculate_file_checksum(self, path: str, chunk_size: int = BYTES_PER_MB) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as handle:
            for block in iter(lambda: handle.read(chunk_size), b""):
                digest.update(block)
        return digest.hexdigest()

    def validate_file_integrity(self, path: str, expected_checksum: Optional[str] = None) -> bool:
        """Validate a backup file exists, is non-empty and matches its checksum."""
        if not os.path.exists(path):
            self.logger.error("backup_file_missing", path=path)
            return False

        if os.path.getsize(path) == 0:
            self.logger.error("backup_file_empty", path=path)
            return False

        current_checksum = self.calculate_file_checksum(path)
        if expected_checksum and current_checksum != expected_checksum:
            self.logger.error(
                "backup_checksum_mismatch",
                path=path,
                expected=expected_checksum,
                actual=current_checksum
            )
            return False

        self.logger.info("backup_validation_passed", path=path, checksum=current_checksum)
        return True

    def validate_vector_dimensions(
        self,
        vectors: Sequence[Sequence[float]],
        expected_dimension: int
    ) -> List[int]:
        """Return positions of vectors whose length differs from ``expected_dimension``."""
        mismatched = [i for i, vector in enumerate(vectors) if len(vector) != expected_dimension]
        if mismatched:
            self.logger.error(
                "dimension_mismatch",
                mismatched_count=len(mismatched),
                first_position=mismatched[0],
                expected=expected_dimension
            )
        return mismatched


# Global instances for shared use
memory_manager = MemoryManager()
performance_monitor = PerformanceMonitor()
index_validator = IndexValidator()
