"""
Unit tests for Ok, Degraded and Failed results.
"""

import pytest

from vector_resilience.core.exceptions import ApiKeyExpiredError, CacheDegradedError
from vector_resilience.schemas.classification import FallbackStrategy
from vector_resilience.schemas.results import Degraded, Failed, Ok


class TestResults:
    """Tests for the three result variants."""

    def test_ok(self):
        result = Ok([1.0])

        assert (result.is_ok, result.is_degraded, result.is_failed) == (True, False, False)
        assert result.value_or(None) == [1.0]

    def test_degraded_with_value(self):
        issue = CacheDegradedError("slow").classified
        result = Degraded(FallbackStrategy.DIRECT_PROCESSING, "cache bypassed", [1.0], (issue,))

        assert result.is_degraded
        assert result.value_or([]) == [1.0]
        assert result.issues == (issue,)

    def test_degraded_without_value_uses_default(self):
        result = Degraded(FallbackStrategy.TEXT_SEARCH_ONLY, "vectors unavailable")

        assert result.value_or([]) == []
        assert result.issues == ()

    def test_failed_reraises_typed_error(self):
        error = ApiKeyExpiredError("openai")
        result = Failed(error.classified)

        assert result.is_failed
        assert result.value_or("default") == "default"
        with pytest.raises(ApiKeyExpiredError) as exc_info:
            result.raise_error()
        assert exc_info.value is error

    def test_results_are_immutable(self):
        with pytest.raises(AttributeError):
            Ok(1).value = 2
