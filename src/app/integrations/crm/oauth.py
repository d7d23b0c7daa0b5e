"""HubSpot OAuth 2.0 authorization-code flow with PKCE.

HubSpotOAuth builds the authorization URL (read-only scopes, S256 code
challenge) and performs the two token-endpoint exchanges: authorization
code -> tokens, and refresh token -> tokens. It holds no state; the PKCE
verifier travels inside the signed state token (see core/security.py).
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import ValidationError

from src.app.integrations.errors import (
    ConfigurationError,
    CRMConnectionError,
    TokenExchangeError,
    TokenRefreshError,
)
from src.app.integrations.schemas import AuthorizationRequest, TokenPair

logger = structlog.get_logger(__name__)

AUTH_URL = "https://app.hubspot.com/oauth/authorize"
TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"

# Read-only scopes
SCOPES = (
    "crm.objects.deals.read",
    "crm.objects.companies.read",
    "crm.objects.contacts.read",
    "crm.schemas.deals.read",
    "crm.schemas.companies.read",
    "crm.schemas.contacts.read",
)


def generate_code_verifier() -> str:
    """Random PKCE verifier (86 URL-safe characters)."""
    return secrets.token_urlsafe(64)


def code_challenge(verifier: str) -> str:
    """S256 challenge: unpadded base64url of SHA-256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class HubSpotOAuth:
    """HubSpot OAuth app client.

    Args:
        client_id: OAuth app client id.
        client_secret: OAuth app client secret.
        redirect_uri: Registered callback URL.
        auth_url: Authorization page URL.
        token_url: Token endpoint URL.
        transport: Optional httpx transport (tests).
        timeout: Token endpoint timeout in seconds.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        auth_url: str = AUTH_URL,
        token_url: str = TOKEN_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._auth_url = auth_url
        self._token_url = token_url
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("HubSpot OAuth is not configured")

    def authorization_request(self, scopes: tuple[str, ...] | None = None) -> AuthorizationRequest:
        """Build the authorization URL (minus state) and its PKCE verifier."""
        self._require_configured()
        verifier = generate_code_verifier()
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(scopes or SCOPES),
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        return AuthorizationRequest(
            url=f"{self._auth_url}?{urlencode(params)}",
            code_verifier=verifier,
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenPair:
        """Trade an authorization code for tokens.

        Raises:
            TokenExchangeError: HubSpot rejected the code or verifier.
        """
        self._require_configured()
        response = await self._post_token({
            "grant_type": "authorization_code",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            "code": code,
            "code_verifier": code_verifier,
        })
        if response.is_error:
            logger.warning("oauth.exchange_failed", status=response.status_code)
            raise TokenExchangeError(f"HubSpot token exchange failed: {response.text}")
        return self._parse_tokens(response, TokenExchangeError)

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Trade a refresh token for a new token pair.

        Raises:
            TokenRefreshError: HubSpot rejected the refresh token.
        """
        self._require_configured()
        response = await self._post_token({
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
        })
        if response.is_error:
            logger.warning("oauth.refresh_rejected", status=response.status_code)
            raise TokenRefreshError("Failed to refresh HubSpot token")
        return self._parse_tokens(response, TokenRefreshError)

    async def _post_token(self, form: dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                return await client.post(self._token_url, data=form)
        except httpx.HTTPError as exc:
            logger.error("oauth.token_endpoint_unreachable", error=str(exc))
            raise CRMConnectionError(f"HubSpot token endpoint unreachable: {exc}") from exc

    @staticmethod
    def _parse_tokens(
        response: httpx.Response, error_cls: type[TokenExchangeError] | type[TokenRefreshError]
    ) -> TokenPair:
        try:
            return TokenPair.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise error_cls("HubSpot token response was malformed") from exc
