"""
Integration tests for the management API against in-memory SQLite.
"""

import pytest
from fastapi.testclient import TestClient

from vector_resilience.api.dependencies import ServiceContainer
from vector_resilience.api.main import create_app
from vector_resilience.core.exceptions import CacheDegradedError, DatabaseConnectionError
from vector_resilience.services.degradation_messages import DegradationMessageService


@pytest.fixture
def container(cache_manager, tracker, index_manager, database, created_index):
    return ServiceContainer(
        cache_manager=cache_manager,
        tracker=tracker,
        message_service=DegradationMessageService(),
        index_manager=index_manager,
        database=database,
        descriptors={created_index.index_name: created_index}
    )


@pytest.fixture
def client(container):
    return TestClient(create_app(services=container, validate_config=False))


@pytest.fixture
def bare_client(cache_manager, tracker):
    """Client for an application without a database or indexes."""
    services = ServiceContainer(cache_manager=cache_manager, tracker=tracker, message_service=DegradationMessageService())
    return TestClient(create_app(services=services, validate_config=False))


class TestHealthEndpoints:
    """Tests for /health and /status."""

    def test_health_with_database(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["embedding_provider"]["provider"] == "local"
        assert body["checks"]["cache"]["details"]["backend"] == "memory"

    def test_health_without_database(self, bare_client):
        response = bare_client.get("/health")

        assert response.status_code == 200
        assert response.json()["checks"]["database"]["status"] == "not_configured"

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"x-correlation-id": "req-123"})

        assert response.headers["x-correlation-id"] == "req-123"
        assert response.headers["X-Process-Time"].endswith("ms")

    def test_status_healthy_without_issues(self, client):
        body = client.get("/status").json()

        assert body["status"] == "healthy"
        assert "admin_summary" not in body

    def test_status_reports_tracked_issues(self, client, tracker):
        tracker.record(DatabaseConnectionError("could not connect").classified)
        tracker.record(CacheDegradedError("slow").classified)

        body = client.get("/status", params={"audience": "admin"}).json()

        assert body["status"] == "degraded"
        assert body["total_issues"] == 2
        assert body["admin_summary"]["by_kind"] == {"database_connection": 1, "cache_degraded": 1}
        assert "could not connect" not in body["message"]


class TestCacheEndpoints:
    """Tests for /cache management."""

    def test_stats_and_export(self, client, cache_manager):
        cache_manager.cache_embedding("hello", [1.0, 0.0])
        cache_manager.get_cached_embedding("hello")

        stats = client.get("/cache/stats").json()
        export = client.get("/cache/export").json()

        assert stats["hits"] == 1
        assert stats["total_entries"] == 1
        assert export["hits"] == 1
        assert export["total_entries"] == 1

    def test_clear(self, client, cache_manager):
        cache_manager.cache_embedding("hello", [1.0])

        assert client.post("/cache/clear").json() == {"success": True}
        assert cache_manager.get_cached_embedding("hello") is None

    def test_clear_expired(self, client, cache_manager, clock):
        cache_manager.cache_embedding("short", [1.0], ttl=10)
        cache_manager.cache_embedding("long", [1.0])
        clock.advance(60)

        body = client.post("/cache/clear-expired").json()

        assert body["success"] is True
        assert body["entries_cleaned"] == 1

    def test_clear_by_age(self, client, cache_manager, clock):
        cache_manager.cache_embedding("old", [1.0], ttl=0)
        clock.advance(2 * 86400)

        body = client.post("/cache/clear-by-age", params={"days": 1}).json()

        assert body == {"success": True, "days": 1, "removed": 1}

    def test_clear_by_age_rejects_zero_days(self, client):
        response = client.post("/cache/clear-by-age", params={"days": 0})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_clear_by_age_requires_days(self, client):
        response = client.post("/cache/clear-by-age")

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"][0]["field"] == "query -> days"

    def test_optimize(self, client):
        body = client.post("/cache/optimize").json()

        assert body["success"] is True
        assert "statistics" in body


class TestIndexEndpoints:
    """Tests for /indexes inspection."""

    def test_health(self, client, index_manager, created_index):
        index_manager.index_items(created_index, {"1": "alpha", "2": "beta"})

        body = client.get("/indexes/articles/health").json()

        assert body["status"] == "healthy"
        assert body["total_vectors"] == 2
        assert body["index_name"] == "articles"

    def test_statistics(self, client, index_manager, created_index):
        index_manager.index_items(created_index, {"1": "alpha"})
        index_manager.search(created_index, "alpha")

        body = client.get("/indexes/articles/statistics").json()

        assert body["statistics"]["dialect"] == "encoded"
        assert body["statistics"]["total_vectors"] == 1
        assert body["performance"]["searches"] == 1

    def test_unknown_index(self, client):
        response = client.get("/indexes/missing/health")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_indexes_not_configured(self, bare_client):
        response = bare_client.get("/indexes/articles/statistics")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"
