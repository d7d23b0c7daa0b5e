"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness check verifies database connectivity and reports whether an LLM
provider is configured for mapping suggestions.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database connectivity and LLM configuration. Returns check results dict."""
    checks: dict = {"database": "ok", "litellm": "ok", "hubspot_oauth": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not (settings.ANTHROPIC_API_KEY or settings.OPENAI_API_KEY):
        checks["litellm"] = "no_keys"
    if not settings.hubspot_oauth_configured:
        checks["hubspot_oauth"] = "not_configured"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: verifies DB connectivity.

    Returns 200 if the database is reachable, 503 otherwise. Missing LLM keys
    or OAuth app settings are reported but do not fail readiness (private app
    tokens and manual mappings still work).
    """
    checks = await _check_dependencies()
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
