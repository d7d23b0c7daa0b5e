"""Access-token choke point for every CRM call.

TokenManager.get_access_token() is the only way code obtains a usable
HubSpot token. OAuth tokens are refreshed when they are within
REFRESH_MARGIN of expiry; private app tokens never expire and are only
decrypted. Refreshes are single-flight per integration: concurrent callers
wait on one asyncio.Lock and re-read the row, so only the first one talks to
the token endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.app.core.encryption import CredentialVault
from src.app.core.monitoring import crm_token_refreshes_total
from src.app.integrations.crm.oauth import HubSpotOAuth
from src.app.integrations.errors import (
    NotFoundError,
    ReconnectRequiredError,
    TokenRefreshError,
)
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import IntegrationPatch, IntegrationRead, IntegrationStatus

logger = structlog.get_logger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


def needs_refresh(
    integration: IntegrationRead,
    now: datetime | None = None,
    margin: timedelta = REFRESH_MARGIN,
) -> bool:
    """True if an OAuth token with a known expiry expires within ``margin``."""
    if integration.is_private_app or integration.token_expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return integration.token_expires_at - now < margin


class TokenManager:
    """Hands out valid access tokens, refreshing OAuth tokens as needed.

    Args:
        repository: Integration persistence.
        vault: Credential vault for token blobs.
        oauth: OAuth client used for refresh-token exchanges.
        clock: Returns the current UTC time (overridable in tests).
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        vault: CredentialVault,
        oauth: HubSpotOAuth,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._vault = vault
        self._oauth = oauth
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = self._locks[integration_id] = asyncio.Lock()
        return lock

    def forget(self, integration_id: str) -> None:
        """Drop the refresh lock of a removed integration."""
        self._locks.pop(integration_id, None)

    async def get_access_token(self, integration: IntegrationRead) -> str:
        """Return a usable plaintext access token for the integration.

        Raises:
            ReconnectRequiredError: The integration is in error state.
            TokenRefreshError: A needed refresh failed.
        """
        if integration.status is IntegrationStatus.ERROR:
            raise ReconnectRequiredError(
                "HubSpot connection needs to be re-authorized"
            )
        if not integration.auth_token_encrypted:
            raise ReconnectRequiredError("Integration has no access token")

        if integration.is_private_app:
            return self._vault.decrypt(integration.auth_token_encrypted)

        if needs_refresh(integration, now=self._clock()):
            integration = await self.refresh(integration)

        return self._vault.decrypt(integration.auth_token_encrypted)

    async def refresh(self, integration: IntegrationRead) -> IntegrationRead:
        """Refresh the token pair once, coalescing concurrent callers.

        Returns the integration as persisted after the refresh (or after the
        refresh another caller already completed).
        """
        async with self._lock_for(integration.id):
            current = await self._repository.get_integration(integration.id)
            if current is None:
                raise NotFoundError("Integration not found")
            if current.status is IntegrationStatus.ERROR:
                raise ReconnectRequiredError(
                    "HubSpot connection needs to be re-authorized"
                )
            if not needs_refresh(current, now=self._clock()):
                logger.debug("oauth.refresh_coalesced", integration_id=integration.id)
                return current
            return await self._exchange(current)

    async def _exchange(self, integration: IntegrationRead) -> IntegrationRead:
        if not integration.refresh_token_encrypted:
            await self._mark_error(integration.id)
            raise TokenRefreshError("No refresh token found")

        refresh_token = self._vault.decrypt(integration.refresh_token_encrypted)
        try:
            tokens = await self._oauth.refresh_tokens(refresh_token)
        except TokenRefreshError:
            await self._mark_error(integration.id)
            raise

        patch = IntegrationPatch(
            auth_token_encrypted=self._vault.encrypt(tokens.access_token),
            refresh_token_encrypted=self._vault.encrypt(tokens.refresh_token or refresh_token),
            token_expires_at=tokens.expires_at(self._clock()),
            status=IntegrationStatus.ACTIVE,
        )
        updated = await self._repository.update_integration(integration.id, patch)
        if updated is None:
            raise NotFoundError("Integration not found")

        crm_token_refreshes_total.labels(outcome="success").inc()
        logger.info(
            "oauth.token_refreshed",
            integration_id=integration.id,
            expires_at=updated.token_expires_at.isoformat() if updated.token_expires_at else None,
        )
        return updated

    async def _mark_error(self, integration_id: str) -> None:
        crm_token_refreshes_total.labels(outcome="failure").inc()
        await self._repository.update_integration(
            integration_id, IntegrationPatch(status=IntegrationStatus.ERROR)
        )
        logger.error("oauth.refresh_failed", integration_id=integration_id)
