"""Application-level tests: health checks and error rendering."""

from __future__ import annotations

from unittest.mock import patch

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.v1.health import router as health_router
from src.app.config import Environment, Settings
from src.app.integrations.errors import CRMAPIError, IntegrationError, InvalidStateError
from src.app.main import create_app, integration_error_handler


def _error_app(exc: Exception) -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(IntegrationError, integration_error_handler)

    @app.get("/boom")
    async def boom():
        raise exc

    return app


async def _get(app: FastAPI, path: str):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path)


# ── Health ───────────────────────────────────────────────────────────────────


async def test_liveness_check():
    app = FastAPI()
    app.include_router(health_router)
    response = await _get(app, "/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_routes_are_mounted_under_api_v1():
    paths = {route.path for route in create_app().routes}
    assert "/health" in paths
    assert "/metrics" in paths
    assert "/api/v1/integrations/hubspot/auth-url" in paths
    assert "/api/v1/cards/{card_id}/crm-links" in paths


# ── Error Rendering ──────────────────────────────────────────────────────────


async def test_error_body_carries_code():
    response = await _get(_error_app(InvalidStateError("Invalid or expired state token")), "/boom")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid or expired state token", "code": "invalid_state"}


async def test_production_hides_unexposed_messages():
    production = Settings(ENVIRONMENT=Environment.production)
    with patch("src.app.main.get_settings", return_value=production):
        hidden = await _get(_error_app(CRMAPIError(500, "internal detail")), "/boom")
        shown = await _get(_error_app(InvalidStateError("Invalid or expired state token")), "/boom")

    assert hidden.status_code == 502
    assert "internal detail" not in hidden.text
    assert hidden.json()["code"] == "crm_api_error"
    assert shown.json()["error"] == "Invalid or expired state token"
