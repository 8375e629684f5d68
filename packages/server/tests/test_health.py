"""
Health check endpoint tests.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Health endpoint should return status ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ready_check(client: AsyncClient):
    """Ready endpoint should ping the store."""
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "allowlist_size": 1}


@pytest.mark.asyncio
async def test_ready_check_store_down(settings, fake_store):
    """Ready endpoint reports 503 when the store cannot be reached."""
    from httpx import ASGITransport

    from app.core.services import build_services
    from app.main import create_app

    fake_store.failing.add("ping")
    app = create_app(settings, services=build_services(settings, store=fake_store))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/ready")
    assert response.status_code == 503
    assert response.json()["code"] == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_api_root(client: AsyncClient):
    """API v1 root should return version and endpoint list."""
    response = await client.get("/api/v1/")
    assert response.status_code == 200
    data = response.json()
    assert data["api"] == "v1"
    assert "/identity/{identityId}/role" in data["endpoints"]


@pytest.mark.asyncio
async def test_security_and_request_id_headers(client: AsyncClient):
    response = await client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Request-ID"]
