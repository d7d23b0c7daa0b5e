"""Access token and OAuth state token tests.

Access tokens are host-issued JWTs carrying sub + workspace_id. State tokens
carry the PKCE verifier through the HubSpot redirect and must be rejected
when tampered with, expired, or of the wrong type.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from jose import jwt

from src.app.config import get_settings
from src.app.core.security import (
    STATE_TOKEN_TYPE,
    create_access_token,
    create_state_token,
    verify_state_token,
    verify_token,
)
from src.app.integrations.errors import InvalidStateError


# ── Access Tokens ────────────────────────────────────────────────────────────


def test_access_token_round_trip():
    """A freshly issued token verifies and keeps its claims."""
    token = create_access_token({"sub": "user-1", "workspace_id": "ws-alpha"})
    payload = verify_token(token)
    assert payload["sub"] == "user-1"
    assert payload["workspace_id"] == "ws-alpha"
    assert payload["type"] == "access"


def test_access_token_without_workspace_rejected():
    """Tokens must carry a workspace claim."""
    token = create_access_token({"sub": "user-1"})
    with pytest.raises(HTTPException) as exc_info:
        verify_token(token)
    assert exc_info.value.status_code == 401


def test_expired_access_token_rejected():
    token = create_access_token(
        {"sub": "user-1", "workspace_id": "ws-alpha"},
        expires_delta=timedelta(seconds=-1),
    )
    with pytest.raises(HTTPException):
        verify_token(token)


def test_state_token_is_not_an_access_token():
    state = create_state_token("ws-alpha", "user-1", "verifier")
    with pytest.raises(HTTPException):
        verify_token(state)


# ── OAuth State Tokens ───────────────────────────────────────────────────────


def test_state_token_round_trip():
    state = create_state_token("ws-alpha", "user-1", "pkce-verifier")
    claims = verify_state_token(state)
    assert claims["workspace_id"] == "ws-alpha"
    assert claims["user_id"] == "user-1"
    assert claims["cv"] == "pkce-verifier"
    assert claims["type"] == STATE_TOKEN_TYPE


def test_tampered_state_rejected():
    state = create_state_token("ws-alpha", "user-1", "pkce-verifier")
    header, payload, signature = state.split(".")
    tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])
    with pytest.raises(InvalidStateError):
        verify_state_token(tampered)


def test_state_signed_with_other_key_rejected():
    settings = get_settings()
    now = datetime.now(timezone.utc)
    forged = jwt.encode(
        {
            "workspace_id": "ws-alpha",
            "user_id": "user-1",
            "cv": "v",
            "type": STATE_TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(minutes=5),
        },
        "some-other-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(InvalidStateError):
        verify_state_token(forged)


def test_expired_state_rejected():
    settings = get_settings()
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    expired = jwt.encode(
        {
            "workspace_id": "ws-alpha",
            "user_id": "user-1",
            "cv": "v",
            "type": STATE_TOKEN_TYPE,
            "iat": past,
            "exp": past + timedelta(minutes=10),
        },
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(InvalidStateError):
        verify_state_token(expired)


def test_access_token_is_not_a_state_token():
    token = create_access_token({"sub": "user-1", "workspace_id": "ws-alpha"})
    with pytest.raises(InvalidStateError):
        verify_state_token(token)


def test_garbage_state_rejected():
    with pytest.raises(InvalidStateError):
        verify_state_token("not-a-jwt")
