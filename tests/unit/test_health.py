"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from inbox_triage.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"


def test_readyz_endpoint_runtime_healthy(runtime):
    """Test readiness with the in-memory store and a healthy queue."""
    with patch("inbox_triage.routes.health.settings.SUPABASE_DB_URL", None):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["queue"]["ok"] is True
    assert checks["pipeline"]["state"] == "accumulating"
    assert checks["configuration"]["store"] == "memory"
    assert "database" not in checks


def test_readyz_endpoint_runtime_missing():
    """Test readiness before the runtime has started."""
    with patch("inbox_triage.routes.health.settings.SUPABASE_DB_URL", None):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["queue"]["status"] == "unavailable"


def test_readyz_endpoint_database_unhealthy(runtime):
    """Test readiness when the database check fails."""
    mock_pool = MagicMock()
    mock_pool.is_initialized = True

    with (
        patch("inbox_triage.routes.health.settings.SUPABASE_DB_URL", "postgresql://test"),
        patch("inbox_triage.routes.health.db_pool", mock_pool),
        patch(
            "inbox_triage.routes.health.db_health_check",
            AsyncMock(return_value={"healthy": False, "error": "Connection failed"}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"
    assert isinstance(data["checks"]["database"]["latency_ms"], (int, float))


def test_readyz_endpoint_database_healthy(runtime):
    mock_pool = MagicMock()
    mock_pool.is_initialized = True

    with (
        patch("inbox_triage.routes.health.settings.SUPABASE_DB_URL", "postgresql://test"),
        patch("inbox_triage.routes.health.db_pool", mock_pool),
        patch(
            "inbox_triage.routes.health.db_health_check",
            AsyncMock(return_value={"healthy": True}),
        ),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["configuration"]["store"] == "postgres"
