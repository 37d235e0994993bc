"""Tests for health and root endpoints."""

from unittest.mock import MagicMock


class TestHealthEndpoint:
    def test_health_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "etl-versioning-api"
        assert data["storage"]["backend"] == "memory"

    def test_health_unhealthy_storage(self, client, services):
        services.mongo_service = MagicMock()
        services.mongo_service.health_check.return_value = {
            "status": "unhealthy", "error": "refused", "database": "etl_versioning",
        }

        resp = client.get("/health")

        assert resp.status_code == 503
        assert resp.json()["storage"]["error"] == "refused"

    def test_correlation_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert resp.headers["X-Correlation-ID"] == "req-123"


class TestRootEndpoint:
    def test_root_contains_api_info(self, client):
        data = client.get("/").json()
        assert data["name"] == "ETL Versioning API"
        assert data["version"] == "1.0.0"
        assert data["health"] == "/health"
        assert data["apis"]["rollback"] == "/api/rollback"

    def test_openapi_schema_available(self, client):
        resp = client.get("/openapi.json")
        assert resp.status_code == 200
        paths = resp.json()["paths"]
        assert "/api/rollback/restore" in paths
        assert "/api/snapshots/{data_source_id}/compare" in paths


class TestUnhandledErrors:
    def test_unexpected_error_returns_500_body(self, client, services):
        services.snapshot_store = MagicMock()
        services.snapshot_store.list_versions.side_effect = RuntimeError("disk gone")

        resp = client.get("/api/snapshots/customers/versions")

        assert resp.status_code == 500
        data = resp.json()
        assert data["error_code"] == "INTERNAL"
        assert data["message"] == "disk gone"
        assert data["exception"] == "RuntimeError"

    def test_production_hides_message(self, client, services, monkeypatch):
        monkeypatch.setenv("ENV", "production")
        services.snapshot_store = MagicMock()
        services.snapshot_store.list_versions.side_effect = RuntimeError("disk gone")

        data = client.get("/api/snapshots/customers/versions").json()

        assert "disk gone" not in data["message"]
        assert "exception" not in data
