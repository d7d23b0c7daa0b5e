"""REST API endpoints for card <-> CRM record links.

Links created here are manual; enrichment creates auto links for the same
key space and never overwrites a manual one. The card must belong to the
caller's workspace.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from src.app.api.deps import CurrentUser, get_app_service, get_current_user
from src.app.integrations.schemas import CardLinkRead, MatchedBy

router = APIRouter(prefix="/cards", tags=["cards"])


class CardLinksResponse(BaseModel):
    links: list[CardLinkRead] = Field(default_factory=list)


class CreateLinkRequest(BaseModel):
    """Request body for manually linking a CRM record to a card."""

    integration_id: str
    external_object_id: str = Field(..., min_length=1)
    external_object_type: str = "deal"
    external_object_name: str | None = None


async def _require_card(request: Request, card_id: str, user: CurrentUser) -> None:
    repo = get_app_service(request, "integration_repository")
    card = await repo.get_card(card_id, user.workspace_id)
    if card is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Card not found",
        )


@router.get("/{card_id}/crm-links", response_model=CardLinksResponse)
async def list_card_links(
    card_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CardLinksResponse:
    """List every CRM record linked to a card."""
    await _require_card(request, card_id, user)
    repo = get_app_service(request, "integration_repository")
    return CardLinksResponse(links=await repo.list_links(card_id))


@router.post("/{card_id}/crm-links", response_model=CardLinkRead)
async def create_card_link(
    card_id: str,
    body: CreateLinkRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CardLinkRead:
    """Link a CRM record to a card (idempotent on the record key)."""
    await _require_card(request, card_id, user)
    repo = get_app_service(request, "integration_repository")

    integration = await repo.get_integration_for_workspace(body.integration_id, user.workspace_id)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found",
        )

    return await repo.upsert_link(
        card_id,
        integration.id,
        body.external_object_type,
        body.external_object_id,
        body.external_object_name,
        MatchedBy.MANUAL,
    )


@router.delete("/{card_id}/crm-links/{link_id}", status_code=204)
async def delete_card_link(
    card_id: str,
    link_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> Response:
    """Remove one link from a card."""
    await _require_card(request, card_id, user)
    repo = get_app_service(request, "integration_repository")
    await repo.delete_link(card_id, link_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
