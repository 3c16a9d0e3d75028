"""Tests for the diagnostic and utility endpoints."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from chatrelay import app as app_module
from chatrelay.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestConnectionProbe:
    def test_probe_succeeds_and_cleans_up(self, client):
        response = client.get("/api/test-connection")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Database connection successful"
        assert data["database"] == {
            "chat_sessions_accessible": True,
            "chat_messages_accessible": True,
            "crud_operations": True,
        }
        assert set(data["tables"]) == {"chat_sessions", "chat_messages"}
        assert "timestamp" in data
        assert get_runtime().store.list_chat_sessions() == []

    def test_probe_failure_is_reported(self, client):
        store = get_runtime().store
        with patch.object(
            store, "list_chat_sessions", side_effect=RuntimeError("password=hunter2 refused")
        ):
            response = client.get("/api/test-connection")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "Database connection failed"
        assert "hunter2" not in data["details"]


class TestOpenAIProbe:
    def test_reports_missing_key(self, client):
        response = client.get("/api/test-openai")

        assert response.status_code == 200
        assert response.json()["hasApiKey"] is False
        assert response.json()["apiKeyLength"] == 0

    def test_reports_configured_key(self, client):
        get_runtime().settings.openai_api_key = "sk-abcdef"

        response = client.get("/api/test-openai")

        assert response.json()["hasApiKey"] is True
        assert response.json()["apiKeyLength"] == 9
        assert response.json()["message"] == "OpenAI API key is configured (9 characters)"


class TestPlaceholder:
    def test_renders_svg(self, client):
        response = client.get("/api/placeholder/300/200")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("image/svg+xml")
        assert response.headers["cache-control"] == "public, max-age=31536000"
        assert 'width="300"' in response.text
        assert 'height="200"' in response.text
        assert "300x200" in response.text

    def test_dimensions_are_clamped(self, client):
        response = client.get("/api/placeholder/99999/-5")

        assert 'width="2000"' in response.text
        assert 'height="1"' in response.text

    def test_unparseable_dimensions_default(self, client):
        response = client.get("/api/placeholder/wide/0")

        assert "400x400" in response.text


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": app_module.__version__}
        assert response.headers["x-request-id"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"
