"""FastAPI dependency injection for authentication and app-scoped services.

These dependencies are used in endpoint function signatures to inject the
authenticated caller (workspace + user from the host-issued JWT), the
service objects created in the application lifespan, and workspace-level
admission control for enrichment.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.app.core.security import verify_token


class CurrentUser(BaseModel):
    """Authenticated caller, as asserted by the access token."""

    user_id: str
    workspace_id: str


async def get_current_user(request: Request) -> CurrentUser:
    """Extract and validate the current user from the bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:], token_type="access")
    return CurrentUser(user_id=str(payload["sub"]), workspace_id=str(payload["workspace_id"]))


def get_app_service(request: Request, name: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM integrations not initialized",
        )
    return service


async def enforce_enrich_rate_limit(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Admit an enrichment request or reject it with 429. Never queues."""
    limiter = get_app_service(request, "enrich_rate_limiter")
    if not limiter.hit(user.workspace_id):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many enrichment requests, please try again later",
        )
    return user
