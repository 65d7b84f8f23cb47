"""Tests for the health and index routes."""

from margin_leakage.core.config import Settings, get_settings
from margin_leakage.main import app


def test_health_reports_backends(client):
    settings = Settings()
    settings.vertex_project, settings.openrouter_api_key = "proj-1", None
    app.dependency_overrides[get_settings] = lambda: settings

    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["version"] == "1.0.0"
    assert body["services"] == {"vertex_ai": True, "openrouter": False}
    assert "timestamp" in body


def test_index_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "Margin Leakage Analyzer API" in response.text
