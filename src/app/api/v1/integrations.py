"""REST API endpoints for CRM integrations.

Provides connection (OAuth and private app token), disconnection, schema
discovery, AI mapping suggestions, mapping persistence, card enrichment and
ad hoc deal search. Every integration lookup is scoped to the caller's
workspace. Domain errors (IntegrationError subclasses) are rendered by the
exception handler registered in main.py.
"""

from __future__ import annotations

from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.app.api.deps import CurrentUser, enforce_enrich_rate_limit, get_app_service, get_current_user
from src.app.config import get_settings
from src.app.core.security import create_state_token, verify_state_token
from src.app.integrations.errors import IntegrationError, SchemaNotDiscoveredError
from src.app.integrations.schemas import (
    BulkEnrichmentReport,
    CardLinkRead,
    CrmRecord,
    CrmSchema,
    IntegrationRead,
    MappingConfig,
    MappingSuggestion,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class AuthUrlResponse(BaseModel):
    url: str


class IntegrationResponse(BaseModel):
    """Integration as shown to clients. Never carries tokens."""

    id: str
    workspace_id: str
    type: str
    status: str
    auth_type: str
    field_mapping: MappingConfig | None = None
    last_synced: str | None = None
    created_at: str | None = None


class CardEnrichmentResponse(BaseModel):
    card_id: str
    deals_found: int
    enriched: bool
    values: dict[str, str] = Field(default_factory=dict)
    links: list[CardLinkRead] = Field(default_factory=list)


class DealSearchResponse(BaseModel):
    deals: list[CrmRecord] = Field(default_factory=list)


# ── Request Schemas ──────────────────────────────────────────────────────────


class ConnectTokenRequest(BaseModel):
    """Request body for connecting with a private app token."""

    access_token: str = Field(..., min_length=1)


class EnrichRoadmapRequest(BaseModel):
    """Request body for bulk enrichment."""

    roadmap_id: str = Field(..., min_length=1)


class SearchDealsRequest(BaseModel):
    """Request body for ad hoc deal search."""

    query: str = Field(..., min_length=1)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _to_response(integration: IntegrationRead) -> IntegrationResponse:
    """Convert IntegrationRead to IntegrationResponse."""
    return IntegrationResponse(
        id=integration.id,
        workspace_id=integration.workspace_id,
        type=integration.type.value,
        status=integration.status.value,
        auth_type=integration.auth_type.value,
        field_mapping=integration.field_mapping,
        last_synced=integration.last_synced.isoformat() if integration.last_synced else None,
        created_at=integration.created_at.isoformat() if integration.created_at else None,
    )


async def _get_integration(
    request: Request, integration_id: str, user: CurrentUser
) -> IntegrationRead:
    """Load a workspace-scoped integration, 404 if absent."""
    repo = get_app_service(request, "integration_repository")
    integration = await repo.get_integration_for_workspace(integration_id, user.workspace_id)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found",
        )
    return integration


def _settings_redirect(outcome: str) -> RedirectResponse:
    base_url = get_settings().APP_URL.rstrip("/")
    query = urlencode({"tab": "Integrations", "hubspot": outcome})
    return RedirectResponse(f"{base_url}/settings?{query}", status_code=status.HTTP_302_FOUND)


# ── Connection Endpoints ─────────────────────────────────────────────────────


@router.get("/hubspot/auth-url", response_model=AuthUrlResponse)
async def hubspot_auth_url(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> AuthUrlResponse:
    """Issue a HubSpot authorization URL carrying a signed state token."""
    oauth = get_app_service(request, "hubspot_oauth")
    auth_request = oauth.authorization_request()
    state = create_state_token(user.workspace_id, user.user_id, auth_request.code_verifier)
    return AuthUrlResponse(url=auth_request.with_state(state))


@router.get("/hubspot/callback")
async def hubspot_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
) -> RedirectResponse:
    """OAuth redirect target. Bad input is rejected before anything is written."""
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing code or state parameter",
        )

    claims = verify_state_token(state)
    service = get_app_service(request, "integration_service")
    try:
        await service.complete_oauth(claims["workspace_id"], code, claims["cv"])
    except IntegrationError as exc:
        logger.warning(
            "oauth.callback_failed",
            workspace_id=claims["workspace_id"],
            code=exc.code,
            error=exc.message,
        )
        return _settings_redirect("error")
    return _settings_redirect("connected")


@router.post("/hubspot/connect-token", response_model=IntegrationResponse)
async def hubspot_connect_token(
    body: ConnectTokenRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> IntegrationResponse:
    """Connect with a private app token after validating it against HubSpot."""
    service = get_app_service(request, "integration_service")
    integration = await service.connect_private_app(user.workspace_id, body.access_token)
    return _to_response(integration)


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[IntegrationResponse]:
    """List the workspace's integrations."""
    repo = get_app_service(request, "integration_repository")
    integrations = await repo.list_integrations(user.workspace_id)
    return [_to_response(i) for i in integrations]


@router.delete("/{integration_id}", status_code=204)
async def disconnect_integration(
    integration_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> Response:
    """Disconnect, removing schema cache and card links with the integration."""
    integration = await _get_integration(request, integration_id, user)
    service = get_app_service(request, "integration_service")
    await service.disconnect(integration)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Schema Endpoints ─────────────────────────────────────────────────────────


@router.post("/{integration_id}/discover-schema", response_model=CrmSchema)
async def discover_schema(
    integration_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CrmSchema:
    """Discover the CRM schema and overwrite the cached copy."""
    integration = await _get_integration(request, integration_id, user)
    discovery = get_app_service(request, "schema_discovery")
    repo = get_app_service(request, "integration_repository")

    schema = await discovery.discover(integration)
    return await repo.upsert_schema_cache(integration.id, schema)


@router.get("/{integration_id}/schema", response_model=CrmSchema)
async def get_schema(
    integration_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CrmSchema:
    """Return the cached schema."""
    integration = await _get_integration(request, integration_id, user)
    repo = get_app_service(request, "integration_repository")
    schema = await repo.get_schema_cache(integration.id)
    if schema is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No cached schema. Run discover-schema first.",
        )
    return schema


# ── Mapping Endpoints ────────────────────────────────────────────────────────


@router.post("/{integration_id}/suggest-mappings", response_model=MappingSuggestion)
async def suggest_mappings(
    integration_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> MappingSuggestion:
    """Ask the AI for a field mapping proposal. Nothing is saved."""
    integration = await _get_integration(request, integration_id, user)
    repo = get_app_service(request, "integration_repository")
    suggester = get_app_service(request, "mapping_suggester")

    schema = await repo.get_schema_cache(integration.id)
    if schema is None:
        raise SchemaNotDiscoveredError("No schema discovered yet. Run discover-schema first.")

    custom_fields = await repo.list_custom_fields(user.workspace_id)
    card_names = await repo.list_card_names(user.workspace_id)
    return await suggester.suggest(schema, custom_fields, card_names, workspace_id=user.workspace_id)


@router.put("/{integration_id}/mappings", response_model=MappingConfig)
async def save_mappings(
    integration_id: str,
    body: MappingConfig,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> MappingConfig:
    """Save the mapping, creating custom fields that do not exist yet."""
    integration = await _get_integration(request, integration_id, user)
    service = get_app_service(request, "integration_service")
    return await service.save_mappings(integration, body)


@router.get("/{integration_id}/mappings", response_model=MappingConfig | None)
async def get_mappings(
    integration_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> MappingConfig | None:
    """Return the saved mapping, or null when none has been saved."""
    integration = await _get_integration(request, integration_id, user)
    return integration.field_mapping


# ── Enrichment Endpoints ─────────────────────────────────────────────────────


@router.post("/{integration_id}/enrich", response_model=BulkEnrichmentReport)
async def enrich_roadmap(
    integration_id: str,
    body: EnrichRoadmapRequest,
    request: Request,
    user: CurrentUser = Depends(enforce_enrich_rate_limit),
) -> BulkEnrichmentReport:
    """Enrich every card of a roadmap. Per-card failures are reported inline."""
    integration = await _get_integration(request, integration_id, user)
    enrichment = get_app_service(request, "enrichment_service")
    return await enrichment.enrich_roadmap(
        integration,
        body.roadmap_id,
        concurrency=get_settings().ENRICH_CONCURRENCY,
    )


@router.post("/{integration_id}/enrich/{card_id}", response_model=CardEnrichmentResponse)
async def enrich_card(
    integration_id: str,
    card_id: str,
    request: Request,
    user: CurrentUser = Depends(enforce_enrich_rate_limit),
) -> CardEnrichmentResponse:
    """Enrich a single card."""
    integration = await _get_integration(request, integration_id, user)
    repo = get_app_service(request, "integration_repository")
    enrichment = get_app_service(request, "enrichment_service")

    card = await repo.get_card(card_id, user.workspace_id)
    if card is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Card not found",
        )

    result = await enrichment.enrich_card(integration, card)
    return CardEnrichmentResponse(
        card_id=result.card_id,
        deals_found=result.deals_found,
        enriched=result.enriched,
        values=result.values,
        links=result.links,
    )


# ── Deal Search Endpoint ─────────────────────────────────────────────────────


@router.post("/{integration_id}/search-deals", response_model=DealSearchResponse)
async def search_deals(
    integration_id: str,
    body: SearchDealsRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> DealSearchResponse:
    """Search deals by name for manual linking."""
    integration = await _get_integration(request, integration_id, user)
    search_engine = get_app_service(request, "deal_search")

    extra: list[str] = []
    if integration.field_mapping is not None:
        extra = integration.field_mapping.required_properties()
    deals = await search_engine.search_by_name(integration, body.query, extra_properties=extra)
    return DealSearchResponse(deals=deals)
