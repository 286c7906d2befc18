"""
Integration tests for API endpoints using FastAPI TestClient.

Tests basic endpoints (root, health) that don't require external services.
"""

import uuid

from fastapi.testclient import TestClient


class TestRootEndpoint:
    """Tests for GET /."""

    def test_returns_api_info(self, client: TestClient):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Allnimall Billing API"
        assert data["version"] == "1.0.0"
        assert "docs" in data


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_returns_healthy(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRequestContextMiddleware:
    """Tests for X-Request-ID header injected by RequestContextMiddleware."""

    def test_request_id_is_valid_uuid(self, client: TestClient):
        response = client.get("/health")
        # Should not raise ValueError
        uuid.UUID(response.headers["x-request-id"])

    def test_request_id_unique_per_request(self, client: TestClient):
        r1 = client.get("/health")
        r2 = client.get("/health")
        assert r1.headers["x-request-id"] != r2.headers["x-request-id"]

    def test_caller_request_id_is_echoed(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "scheduler-run-42"})
        assert response.headers["x-request-id"] == "scheduler-run-42"


class TestAuthRequired:
    def test_user_endpoints_need_bearer_token(self, client: TestClient):
        response = client.get("/api/v1/usage")
        assert response.status_code in {401, 403}
