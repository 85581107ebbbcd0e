"""
Unit tests for reliability components: timeouts, circuit breaker, memory and validation.
"""

import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from vector_resilience.core.exceptions import CircuitBreakerOpenError, MemoryExhaustedError
from vector_resilience.core.reliability import (
    BYTES_PER_MB,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    IndexValidator,
    MemoryManager,
    MemoryStats,
    PerformanceMetrics,
    PerformanceMonitor,
    RateLimiter,
)


def failing():
    raise RuntimeError("boom")


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("provider", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30, half_open_max_calls=1), clock)


class TestPerformanceMonitor:
    """Tests for operation tracking and timeouts."""

    def test_track_operation_records_success_and_failure(self):
        monitor = PerformanceMonitor()

        with monitor.track_operation("search"):
            pass
        with pytest.raises(RuntimeError):
            with monitor.track_operation("search"):
                failing()

        metrics = monitor.get_metrics("search")
        assert metrics.operation_count == 2
        assert metrics.error_count == 1
        assert metrics.success_rate == 50.0

    def test_run_with_timeout_returns_result(self):
        monitor = PerformanceMonitor()

        assert monitor.run_with_timeout("add", lambda a, b: a + b, 2, 3, timeout=1.0) == 5

    def test_run_with_timeout_raises_timeout(self):
        """Test a call that never finishes in time raises TimeoutError and is counted."""
        monitor = PerformanceMonitor()
        release = threading.Event()

        try:
            with pytest.raises(TimeoutError):
                monitor.run_with_timeout("stuck", release.wait, 5, timeout=0.05)
        finally:
            release.set()

        assert monitor.get_metrics("stuck").timeout_count == 1

    def test_run_with_timeout_propagates_errors(self):
        monitor = PerformanceMonitor()

        with pytest.raises(RuntimeError):
            monitor.run_with_timeout("boom", failing, timeout=1.0)
        assert monitor.get_metrics("boom").error_count == 1

    def test_unused_operation_has_zero_min_time(self):
        assert PerformanceMonitor().get_metrics("never").to_dict()["min_time"] == 0.0

    def test_p95_over_recent_calls(self):
        metrics = PerformanceMetrics(operation_count=20, total_time=2.0)
        metrics.recent_times.extend([0.01 * i for i in range(1, 21)])

        assert metrics.p95_time == pytest.approx(0.20)
        assert metrics.avg_time == pytest.approx(0.1)
        assert metrics.to_dict()["success_rate"] == 100.0


class TestCircuitBreaker:
    """Tests for breaker state transitions."""

    def test_opens_after_threshold(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(lambda: "never called")

    def test_half_open_after_reset_timeout(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(failing)

        clock.advance(30)

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["failure_count"] == 0

    def test_failed_trial_reopens(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(failing)
        clock.advance(30)

        with pytest.raises(RuntimeError):
            breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        assert breaker.is_available() is False

    def test_success_resets_failure_count(self, breaker):
        with pytest.raises(RuntimeError):
            breaker.call(failing)
        breaker.call(lambda: None)

        assert breaker.get_status()["failure_count"] == 0

    def test_manual_reset(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(failing)

        breaker.reset()

        assert breaker.is_available() is True


class TestMemoryManager:
    """Tests for memory checks with psutil patched."""

    @staticmethod
    def fake_psutil(percent, available_mb, total_mb=16384, rss_mb=512):
        memory = SimpleNamespace(
            percent=percent,
            used=(total_mb - available_mb) * BYTES_PER_MB,
            available=available_mb * BYTES_PER_MB,
            total=total_mb * BYTES_PER_MB,
        )
        process = SimpleNamespace(memory_info=lambda: SimpleNamespace(rss=rss_mb * BYTES_PER_MB))
        return SimpleNamespace(virtual_memory=lambda: memory, Process=lambda: process)

    def test_headroom_keeps_a_fifth_free(self):
        stats = MemoryStats(1000.0, 1000.0, 500.0, 50.0, 2000.0, 100.0)

        assert stats.headroom_mb == 400.0
        assert stats.to_dict()["headroom_mb"] == 400.0

    def test_estimate_batch_memory(self):
        assert MemoryManager.estimate_batch_memory_mb(1024, 1536) == pytest.approx(1024 * (1536 * 8 + 256) / BYTES_PER_MB)

    def test_recommended_batch_size_halves_with_floor(self):
        assert MemoryManager.recommended_batch_size(100) == 50
        assert MemoryManager.recommended_batch_size(12) == 10

    def test_critical_usage_blocks_operation(self):
        with patch("vector_resilience.core.reliability.psutil", self.fake_psutil(95.0, 800)):
            with pytest.raises(MemoryExhaustedError) as exc_info:
                MemoryManager().enforce_memory_limits("insert_vectors")

        assert exc_info.value.context["operation"] == "insert_vectors"

    def test_large_request_blocks_operation(self):
        with patch("vector_resilience.core.reliability.psutil", self.fake_psutil(50.0, 1000)):
            manager = MemoryManager()

            assert manager.check_memory_available(900) is False
            with pytest.raises(MemoryExhaustedError):
                manager.enforce_memory_limits("insert_vectors", 900)

    def test_process_ceiling(self):
        with patch("vector_resilience.core.reliability.psutil", self.fake_psutil(40.0, 8000, rss_mb=600)):
            stats = MemoryManager(max_memory_mb=500).get_memory_stats()

        assert stats.is_critical is True
        assert stats.peak_usage_mb == 600

    def test_healthy_memory_allows_operation(self):
        with patch("vector_resilience.core.reliability.psutil", self.fake_psutil(40.0, 8000)):
            assert MemoryManager().enforce_memory_limits("insert_vectors", 10) is True


class TestIndexValidator:
    """Tests for backup integrity checks."""

    def test_checksum_matches(self, tmp_path):
        path = tmp_path / "backup.jsonl"
        path.write_text('{"item_id": "a"}\n')
        validator = IndexValidator()

        checksum = validator.calculate_file_checksum(str(path))

        assert checksum == validator.calculate_checksum(path.read_bytes())
        assert validator.validate_file_integrity(str(path), checksum) is True
        assert validator.validate_file_integrity(str(path), "0" * 64) is False

    def test_missing_and_empty_files_fail(self, tmp_path):
        empty = tmp_path / "empty.jsonl"
        empty.write_text("")
        validator = IndexValidator()

        assert validator.validate_file_integrity(str(tmp_path / "absent.jsonl")) is False
        assert validator.validate_file_integrity(str(empty)) is False

    def test_dimension_mismatches_reported_by_position(self):
        mismatched = IndexValidator().validate_vector_dimensions([[1.0, 2.0], [1.0], [1.0, 2.0, 3.0]], 2)

        assert mismatched == [1, 2]


class TestRateLimiter:
    """Tests for the token bucket."""

    def test_refills_over_time(self, clock):
        limiter = RateLimiter(2, 60.0, clock)

        assert limiter.acquire() is True
        assert limiter.acquire() is True
        assert limiter.acquire() is False
        assert limiter.seconds_until_available() == 31

        clock.advance(45)

        assert limiter.acquire() is True
        assert limiter.acquire() is False

    def test_tokens_capped_at_max_calls(self, clock):
        limiter = RateLimiter(3, 60.0, clock)
        clock.advance(3600)

        for _ in range(3):
            assert limiter.acquire() is True
        assert limiter.acquire() is False
        assert limiter.get_status()["available_tokens"] == 0
