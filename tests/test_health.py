"""Tests for health endpoints."""

from httpx import ASGITransport, AsyncClient

from quotaflow import __version__
from quotaflow.api.main import create_app
from quotaflow.core.config import Settings
from quotaflow.core.database import Database


async def test_health_check(client: AsyncClient) -> None:
    """Test basic health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": __version__}


async def test_readiness_check(client: AsyncClient) -> None:
    """Test readiness check endpoint."""
    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "database": True}


async def test_readiness_without_database(settings: Settings) -> None:
    """Test readiness reports degraded before the database is connected."""
    app = create_app(settings, database=Database(settings.database_url))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "degraded", "database": False}


async def test_correlation_id_is_echoed(client: AsyncClient) -> None:
    """Test that a caller-supplied correlation ID comes back."""
    response = await client.get("/health", headers={"X-Correlation-ID": "corr-42"})
    assert response.headers["X-Correlation-ID"] == "corr-42"
