"""Tests for health endpoints."""

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from clinic_os import __version__
from clinic_os.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from clinic_os.api.routes import health


def _app(service=None, api_key=None) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)
    if api_key:
        app.add_middleware(APIKeyMiddleware, api_key=api_key)
    app.include_router(health.router)

    @app.get("/private")
    async def private():
        return {"ok": True}

    if service is not None:
        app.state.scheduling_service = service
    return app


@pytest_asyncio.fixture
async def client(service):
    transport = ASGITransport(app=_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "clinic-os", "version": __version__}
        assert "X-Process-Time" in response.headers

    async def test_liveness_check(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_readiness_check_success(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_readiness_without_service(self):
        transport = ASGITransport(app=_app())
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/health/ready")

        assert response.json()["status"] == "not_ready"
        assert "not initialized" in response.json()["errors"][0]


class TestAPIKeyMiddleware:
    async def _get(self, path, headers=None):
        transport = ASGITransport(app=_app(api_key="secret-key"))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            return await ac.get(path, headers=headers or {})

    async def test_health_stays_open(self):
        response = await self._get("/health")
        assert response.status_code == 200

    async def test_missing_key_rejected(self):
        response = await self._get("/private")
        assert response.status_code == 401

    async def test_bearer_key_accepted(self):
        response = await self._get("/private", {"Authorization": "Bearer secret-key"})
        assert response.status_code == 200

    async def test_header_key_accepted(self):
        response = await self._get("/private", {"X-API-Key": "secret-key"})
        assert response.status_code == 200

    async def test_wrong_key_rejected(self):
        response = await self._get("/private", {"X-API-Key": "nope"})
        assert response.status_code == 401
