"""
Unit tests for settings validation and grouped configuration views.
"""

import pytest
from pydantic import ValidationError

from vector_resilience.core.config import ConfigAccessor, Settings, load_settings
from vector_resilience.core.exceptions import ConfigurationError


class TestSettingsValidation:
    """Tests for field and cross-field validators."""

    def test_sqlite_and_postgres_urls_accepted(self):
        assert Settings(DATABASE_URL="sqlite://").DATABASE_URL == "sqlite://"
        assert Settings(DATABASE_URL="postgresql+psycopg2://u@db/search").DATABASE_URL.startswith("postgresql")

    def test_unknown_url_scheme_rejected(self):
        with pytest.raises(ValidationError):
            Settings(DATABASE_URL="mysql://u@db/search")

    @pytest.mark.parametrize("field, value", [
        ("CACHE_BACKEND", "redis"),
        ("EMBEDDING_PROVIDER", "cohere"),
        ("VECTOR_INDEX_METHOD", "flat"),
        ("VECTOR_DISTANCE_METRIC", "manhattan"),
        ("CACHE_CLEANUP_THRESHOLD", 0.0),
    ])
    def test_closed_choices(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_hybrid_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            Settings(HYBRID_TEXT_WEIGHT=0.6, HYBRID_VECTOR_WEIGHT=0.6)

        settings = Settings(HYBRID_TEXT_WEIGHT=0.4, HYBRID_VECTOR_WEIGHT=0.6)
        assert settings.HYBRID_VECTOR_WEIGHT == 0.6

    def test_warning_ratio_below_critical(self):
        with pytest.raises(ValidationError):
            Settings(INDEX_CORRUPTION_CRITICAL_RATIO=0.1, INDEX_CORRUPTION_WARNING_RATIO=0.1)

    def test_dimension_capped(self):
        with pytest.raises(ValidationError):
            Settings(EMBEDDING_MAX_DIMENSIONS=1024, EMBEDDING_DIMENSION=1536)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            Settings(CACHE_FLAVOUR="vanilla")

    def test_load_settings_exits_on_invalid_environment(self, monkeypatch, capsys):
        monkeypatch.setenv("CACHE_BACKEND", "redis")

        with pytest.raises(SystemExit):
            load_settings()

        assert "CACHE_BACKEND" in capsys.readouterr().out


class TestStartupValidation:
    """Tests for checks that need more than one field."""

    def test_durable_cache_needs_database(self):
        with pytest.raises(ConfigurationError):
            Settings(CACHE_BACKEND="tiered", DATABASE_URL=None).validate_critical_startup_config()

    def test_openai_needs_key(self):
        settings = Settings(EMBEDDING_PROVIDER="openai", OPENAI_API_KEY=None)

        assert settings.validate_embedding_health()["api_key_configured"] is False
        with pytest.raises(ConfigurationError):
            settings.validate_critical_startup_config()

    def test_local_provider_needs_nothing(self):
        Settings(EMBEDDING_PROVIDER="local", CACHE_BACKEND="memory").validate_critical_startup_config()


class TestConfigAccessor:
    """Tests for grouped views."""

    def test_database_view(self):
        view = ConfigAccessor(Settings(DATABASE_URL="sqlite://", DB_POOL_SIZE=3, DEBUG=True)).database_config

        assert view == {"url": "sqlite://", "pool_size": 3, "max_overflow": 20, "echo": True}

    def test_embedding_view(self):
        view = ConfigAccessor(Settings(EMBEDDING_PROVIDER="local", EMBEDDING_REQUESTS_PER_MINUTE=120)).embedding_config

        assert view["provider"] == "local"
        assert view["requests_per_minute"] == 120

    def test_resilience_view(self):
        view = ConfigAccessor(Settings(EMBEDDING_MAX_RETRIES=5)).resilience_config

        assert view["max_retries"] == 5
        assert view["requests_per_minute"] == 0

    def test_api_view(self):
        view = ConfigAccessor(Settings(API_PORT=9000, API_PREFIX="/admin")).api_config

        assert view["port"] == 9000
        assert view["prefix"] == "/admin"

    def test_memory_view(self):
        view = ConfigAccessor(Settings(MEMORY_PROCESS_LIMIT_MB=2048)).memory_config

        assert view == {"warning_percent": 80.0, "critical_percent": 90.0, "process_limit_mb": 2048}
