"""
Unit tests for logging processors and correlation ids.
"""

from vector_resilience.core.logging import (
    REDACTED,
    add_app_context,
    correlation_id_var,
    get_correlation_id,
    redact_secrets,
    redact_text,
    set_correlation_id,
)


class TestRedaction:
    """Tests for secret masking."""

    def test_database_url_password_masked(self):
        masked = redact_text("could not connect to postgresql://search:hunter2@db:5432/search")

        assert "hunter2" not in masked
        assert "postgresql://search:***@db:5432/search" in masked

    def test_provider_key_masked(self):
        assert redact_text("Incorrect API key provided: sk-abc123def456ghi") == f"Incorrect API key provided: {REDACTED}"

    def test_secret_fields_masked(self):
        event = redact_secrets(None, "info", {"event": "provider_configured", "api_key": "anything", "dimension": 8})

        assert event == {"event": "provider_configured", "api_key": REDACTED, "dimension": 8}

    def test_non_string_values_untouched(self):
        event = redact_secrets(None, "info", {"event": "health", "api_key_configured": True})

        assert event["api_key_configured"] is True


class TestContext:
    """Tests for correlation and application context."""

    def test_correlation_id_created_once(self):
        token = correlation_id_var.set(None)
        try:
            first = get_correlation_id()
            assert get_correlation_id() == first
        finally:
            correlation_id_var.reset(token)

    def test_explicit_correlation_id(self):
        token = correlation_id_var.set(None)
        try:
            assert set_correlation_id("req-42") == "req-42"
            assert get_correlation_id() == "req-42"
        finally:
            correlation_id_var.reset(token)

    def test_app_context_keeps_explicit_provider(self):
        event = add_app_context(None, "info", {"event": "x", "embedding_provider": "openai"})

        assert event["embedding_provider"] == "openai"
        assert event["cache_backend"] == "memory"
