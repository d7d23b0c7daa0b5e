"""JWT verification for host-issued access tokens and OAuth state tokens.

Access tokens are issued by the host application; this service only
verifies them. OAuth state tokens are signed here and carry the PKCE code
verifier through the HubSpot redirect so the callback can be trusted.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.app.config import get_settings
from src.app.integrations.errors import InvalidStateError

STATE_TOKEN_TYPE = "oauth_state"


# ── JWT Token Creation ────────────────────────────────────────────────────────


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    Used by tooling and tests; in production the host application issues
    these. The data dict should contain at minimum:
    - sub: user_id (str)
    - workspace_id: workspace id (str)
    """
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=30))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Raises:
        HTTPException(401): If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        if payload.get("type") != token_type:
            raise credentials_exception
        if not payload.get("sub") or not payload.get("workspace_id"):
            raise credentials_exception
        return payload
    except JWTError:
        raise credentials_exception


# ── OAuth State (CSRF) ────────────────────────────────────────────────────────


def create_state_token(workspace_id: str, user_id: str, code_verifier: str) -> str:
    """Sign a short-lived state token binding the caller to a PKCE verifier."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {
        "workspace_id": workspace_id,
        "user_id": user_id,
        "cv": code_verifier,
        "type": STATE_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(minutes=settings.OAUTH_STATE_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_state_token(state: str) -> dict:
    """Decode a state token produced by create_state_token().

    Returns:
        Dict with workspace_id, user_id and cv (the PKCE code verifier).

    Raises:
        InvalidStateError: On bad signature, expiry, wrong type or missing claims.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            state,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        raise InvalidStateError("Invalid or expired state token") from exc

    if payload.get("type") != STATE_TOKEN_TYPE:
        raise InvalidStateError("Invalid or expired state token")
    if not payload.get("workspace_id") or not payload.get("cv"):
        raise InvalidStateError("Invalid or expired state token")
    return payload
