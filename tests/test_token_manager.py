"""TokenManager tests: refresh margin, private app tokens, single-flight refresh."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.app.integrations.crm.tokens import REFRESH_MARGIN, TokenManager, needs_refresh
from src.app.integrations.errors import ReconnectRequiredError, TokenRefreshError
from src.app.integrations.schemas import (
    IntegrationPatch,
    IntegrationRead,
    IntegrationStatus,
)

from tests.conftest import add_oauth_integration, add_private_app_integration

TOKEN_PATH = "/oauth/v1/token"
NEW_TOKENS = {"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 1800}


@pytest.fixture
def manager(repo, vault, oauth) -> TokenManager:
    return TokenManager(repository=repo, vault=vault, oauth=oauth)


# ── needs_refresh ────────────────────────────────────────────────────────────


class TestNeedsRefresh:
    def _integration(self, expires_in: timedelta | None, auth_type: str = "oauth") -> IntegrationRead:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return IntegrationRead(
            id="i-1",
            workspace_id="ws",
            token_expires_at=now + expires_in if expires_in is not None else None,
            config={"auth_type": auth_type},
        )

    def test_inside_margin(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert needs_refresh(self._integration(timedelta(minutes=2)), now=now)

    def test_outside_margin(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert not needs_refresh(self._integration(REFRESH_MARGIN + timedelta(seconds=1)), now=now)

    def test_already_expired(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert needs_refresh(self._integration(timedelta(minutes=-10)), now=now)

    def test_private_app_never(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert not needs_refresh(self._integration(timedelta(minutes=-10), "private_app"), now=now)

    def test_unknown_expiry_never(self):
        assert not needs_refresh(self._integration(None))


# ── get_access_token ─────────────────────────────────────────────────────────


class TestGetAccessToken:
    async def test_fresh_token_is_decrypted_without_refresh(self, manager, repo, vault, hubspot):
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(hours=1))

        assert await manager.get_access_token(integration) == "access-old"
        assert hubspot.calls("POST", TOKEN_PATH) == []

    async def test_token_near_expiry_is_refreshed_and_persisted(self, manager, repo, vault, hubspot):
        hubspot.on("POST", TOKEN_PATH, (200, NEW_TOKENS))
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=2))

        token = await manager.get_access_token(integration)

        assert token == "access-new"
        assert len(hubspot.calls("POST", TOKEN_PATH)) == 1
        stored = await repo.get_integration(integration.id)
        assert vault.decrypt(stored.auth_token_encrypted) == "access-new"
        assert vault.decrypt(stored.refresh_token_encrypted) == "refresh-new"
        assert stored.token_expires_at > datetime.now(timezone.utc) + timedelta(minutes=25)
        assert stored.status is IntegrationStatus.ACTIVE

    async def test_refresh_without_new_refresh_token_keeps_old_one(
        self, manager, repo, vault, hubspot
    ):
        hubspot.on("POST", TOKEN_PATH, (200, {"access_token": "access-new", "expires_in": 1800}))
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=1))

        await manager.get_access_token(integration)

        stored = await repo.get_integration(integration.id)
        assert vault.decrypt(stored.refresh_token_encrypted) == "refresh-old"

    async def test_private_app_token_is_never_refreshed(self, manager, repo, vault, hubspot):
        integration = await add_private_app_integration(repo, vault)

        assert await manager.get_access_token(integration) == "pat-token"
        assert hubspot.requests == []

    async def test_private_app_with_past_expiry_is_never_refreshed(
        self, manager, repo, vault, hubspot
    ):
        hubspot.on("POST", TOKEN_PATH, (200, NEW_TOKENS))
        integration = await add_private_app_integration(repo, vault)
        integration = await repo.update_integration(
            integration.id,
            IntegrationPatch(token_expires_at=datetime.now(timezone.utc) - timedelta(hours=1)),
        )
        assert integration.token_expires_at is not None

        assert await manager.get_access_token(integration) == "pat-token"
        assert hubspot.requests == []

    async def test_concurrent_callers_share_one_refresh(self, manager, repo, vault, hubspot):
        hubspot.on("POST", TOKEN_PATH, (200, NEW_TOKENS))
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=2))

        tokens = await asyncio.gather(
            *(manager.get_access_token(integration) for _ in range(5))
        )

        assert tokens == ["access-new"] * 5
        assert len(hubspot.calls("POST", TOKEN_PATH)) == 1

    async def test_rejected_refresh_marks_integration_error(self, manager, repo, vault, hubspot):
        hubspot.on("POST", TOKEN_PATH, (400, {"status": "BAD_REFRESH_TOKEN"}))
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=2))

        with pytest.raises(TokenRefreshError):
            await manager.get_access_token(integration)

        stored = await repo.get_integration(integration.id)
        assert stored.status is IntegrationStatus.ERROR

    async def test_missing_refresh_token_marks_integration_error(
        self, manager, repo, vault, hubspot
    ):
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=2))
        integration = await repo.update_integration(
            integration.id, IntegrationPatch(refresh_token_encrypted=None)
        )

        with pytest.raises(TokenRefreshError):
            await manager.get_access_token(integration)

        assert hubspot.requests == []
        stored = await repo.get_integration(integration.id)
        assert stored.status is IntegrationStatus.ERROR

    async def test_error_status_requires_reconnect(self, manager, repo, vault, hubspot):
        integration = await add_oauth_integration(
            repo, vault, status=IntegrationStatus.ERROR
        )

        with pytest.raises(ReconnectRequiredError):
            await manager.get_access_token(integration)
        assert hubspot.requests == []

    async def test_forget_drops_refresh_lock(self, manager, repo, vault, hubspot):
        hubspot.on("POST", TOKEN_PATH, (200, NEW_TOKENS))
        integration = await add_oauth_integration(repo, vault, expires_in=timedelta(minutes=2))
        await manager.get_access_token(integration)
        assert integration.id in manager._locks

        manager.forget(integration.id)

        assert integration.id not in manager._locks
        manager.forget(integration.id)
