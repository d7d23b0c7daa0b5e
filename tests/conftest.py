"""Shared fixtures for the CRM integration tests.

Provides:
- In-memory SQLite engine (aiosqlite) with all integration tables created
- IntegrationRepository bound to that engine
- CredentialVault with a fixed test secret
- Helpers to seed host cards and integrations
- FakeHubSpot: httpx.MockTransport-backed HubSpot double that records requests
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import StaticPool

from src.app.core.database import build_engine, init_db, session_factory_for
from src.app.core.encryption import CredentialVault
from src.app.integrations.crm.client import HubSpotClient
from src.app.integrations.crm.oauth import HubSpotOAuth
from src.app.integrations.models import CardModel
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    AuthType,
    IntegrationPatch,
    IntegrationRead,
    IntegrationStatus,
)

WORKSPACE_ID = "ws-alpha"
OTHER_WORKSPACE_ID = "ws-beta"
TEST_SECRET = "test-vault-passphrase"
API_BASE = "https://hubspot.test"


# ── HubSpot Double ───────────────────────────────────────────────────────────


class FakeHubSpot:
    """Routes requests to queued or static responses and records every call.

    ``responses`` maps (method, path) to either a single response spec or a
    list consumed in order (the last entry repeats). A spec is a
    (status, json_body) tuple.
    """

    def __init__(self) -> None:
        self.responses: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *specs: tuple[int, Any]) -> None:
        self.responses[(method, path)] = list(specs)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        specs = self.responses.get((request.method, request.url.path))
        if not specs:
            return httpx.Response(404, json={"message": "not found"})
        status, body = specs.pop(0) if len(specs) > 1 else specs[0]
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def json_body(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


async def no_sleep(seconds: float) -> None:
    return None


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    test_engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def repo(session_factory) -> IntegrationRepository:
    return IntegrationRepository(session_factory=session_factory)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_SECRET)


@pytest.fixture
def hubspot() -> FakeHubSpot:
    return FakeHubSpot()


@pytest.fixture
def client_factory(hubspot) -> Callable[[str], HubSpotClient]:
    def factory(access_token: str) -> HubSpotClient:
        return HubSpotClient(
            access_token,
            base_url=API_BASE,
            transport=hubspot.transport,
            sleep=no_sleep,
        )

    return factory


@pytest.fixture
def oauth(hubspot) -> HubSpotOAuth:
    return HubSpotOAuth(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.test/api/v1/integrations/hubspot/callback",
        token_url=f"{API_BASE}/oauth/v1/token",
        transport=hubspot.transport,
    )


# ── Seed Helpers ─────────────────────────────────────────────────────────────


async def add_card(
    session_factory,
    name: str,
    roadmap_id: str | None = None,
    workspace_id: str = WORKSPACE_ID,
) -> str:
    """Insert a host card row and return its id."""
    card_id = uuid.uuid4()
    async with session_factory() as session:
        session.add(
            CardModel(
                id=card_id,
                workspace_id=workspace_id,
                roadmap_id=uuid.UUID(roadmap_id) if roadmap_id else None,
                name=name,
            )
        )
        await session.commit()
    return str(card_id)


async def add_oauth_integration(
    repo: IntegrationRepository,
    vault: CredentialVault,
    expires_in: timedelta = timedelta(hours=1),
    workspace_id: str = WORKSPACE_ID,
    status: IntegrationStatus = IntegrationStatus.ACTIVE,
) -> IntegrationRead:
    return await repo.upsert_integration(
        workspace_id,
        "hubspot",
        IntegrationPatch(
            auth_token_encrypted=vault.encrypt("access-old"),
            refresh_token_encrypted=vault.encrypt("refresh-old"),
            token_expires_at=datetime.now(timezone.utc) + expires_in,
            status=status,
            config={"auth_type": AuthType.OAUTH.value},
        ),
    )


async def add_private_app_integration(
    repo: IntegrationRepository,
    vault: CredentialVault,
    workspace_id: str = WORKSPACE_ID,
) -> IntegrationRead:
    return await repo.upsert_integration(
        workspace_id,
        "hubspot",
        IntegrationPatch(
            auth_token_encrypted=vault.encrypt("pat-token"),
            status=IntegrationStatus.ACTIVE,
            config={"auth_type": AuthType.PRIVATE_APP.value},
        ),
    )
