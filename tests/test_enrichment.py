"""Enrichment tests: single card, roadmap-wide runs, failure isolation."""

from __future__ import annotations

import httpx
import pytest

from src.app.integrations.crm.enrichment import EnrichmentService, require_mapping
from src.app.integrations.crm.search import DEAL_SEARCH_PATH, DealSearchEngine
from src.app.integrations.crm.tokens import TokenManager
from src.app.integrations.errors import MappingNotConfiguredError
from src.app.integrations.schemas import (
    FieldMapping,
    IntegrationPatch,
    IntegrationRead,
    MappingConfig,
    MatchedBy,
)

from tests.conftest import WORKSPACE_ID, add_card, add_private_app_integration, json_body

ROADMAP_ID = "22222222-2222-2222-2222-222222222222"


@pytest.fixture
def service(repo, vault, oauth, client_factory) -> EnrichmentService:
    search = DealSearchEngine(TokenManager(repo, vault, oauth), client_factory)
    return EnrichmentService(repo, search)


async def _mapped_integration(repo, vault):
    revenue = await repo.create_custom_field(WORKSPACE_ID, "Revenue")
    deals = await repo.create_custom_field(WORKSPACE_ID, "Deals")
    integration = await add_private_app_integration(repo, vault)
    mapping = MappingConfig(
        field_mappings=[
            FieldMapping(crm_property="amount", aggregation="sum", custom_field_id=revenue.id),
            FieldMapping(crm_property="dealname", aggregation="count", custom_field_id=deals.id),
        ]
    )
    integration = await repo.update_integration(integration.id, IntegrationPatch(field_mapping=mapping))
    return integration, revenue.id, deals.id


def _search_results(request_body: dict) -> dict:
    term = request_body["filterGroups"][0]["filters"][0]["value"]
    if term == "Broken":
        return {"status": 500}
    if term == "SSO":
        return {"results": [
            {"id": "1", "properties": {"dealname": "SSO Acme", "amount": "10"}},
            {"id": "2", "properties": {"dealname": "SSO Globex", "amount": "20"}},
        ]}
    return {"results": []}


def _route_search(hubspot) -> None:
    original = hubspot.handler

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path != DEAL_SEARCH_PATH:
            return original(request)
        hubspot.requests.append(request)
        body = _search_results(json_body(request))
        if body.get("status"):
            return httpx.Response(body["status"], text="search failed")
        return httpx.Response(200, json=body)

    hubspot.handler = handler


# ── Mapping Guard ────────────────────────────────────────────────────────────


async def test_unconfigured_mapping_is_rejected(service, repo, vault, session_factory):
    integration = await add_private_app_integration(repo, vault)
    card_id = await add_card(session_factory, "SSO")
    card = await repo.get_card(card_id, WORKSPACE_ID)

    with pytest.raises(MappingNotConfiguredError):
        await service.enrich_card(integration, card)
    with pytest.raises(MappingNotConfiguredError):
        await service.enrich_roadmap(integration, ROADMAP_ID)


def test_empty_field_mappings_count_as_unconfigured():
    integration = IntegrationRead(id="i", workspace_id="ws", field_mapping=MappingConfig())
    with pytest.raises(MappingNotConfiguredError):
        require_mapping(integration)


# ── Single Card ──────────────────────────────────────────────────────────────


class TestEnrichCard:
    async def test_links_and_aggregates(self, service, repo, vault, session_factory, hubspot):
        _route_search(hubspot)
        integration, revenue_id, deals_id = await _mapped_integration(repo, vault)
        card_id = await add_card(session_factory, "SSO")
        card = await repo.get_card(card_id, WORKSPACE_ID)

        result = await service.enrich_card(integration, card)

        assert result.enriched is True
        assert result.deals_found == 2
        assert result.values == {revenue_id: "30", deals_id: "2"}
        assert {link.external_object_id for link in result.links} == {"1", "2"}
        assert all(link.matched_by is MatchedBy.AUTO for link in result.links)
        assert await repo.get_custom_field_values(card_id) == {revenue_id: "30", deals_id: "2"}

    async def test_search_uses_card_name_and_mapped_properties(
        self, service, repo, vault, session_factory, hubspot
    ):
        _route_search(hubspot)
        integration, _, _ = await _mapped_integration(repo, vault)
        card = await repo.get_card(await add_card(session_factory, "SSO"), WORKSPACE_ID)

        await service.enrich_card(integration, card)

        body = json_body(hubspot.calls("POST", DEAL_SEARCH_PATH)[0])
        assert body["filterGroups"] == [
            {"filters": [{"propertyName": "dealname", "operator": "CONTAINS_TOKEN", "value": "SSO"}]}
        ]
        assert "amount" in body["properties"]

    async def test_rerun_does_not_duplicate_links(self, service, repo, vault, session_factory, hubspot):
        _route_search(hubspot)
        integration, _, _ = await _mapped_integration(repo, vault)
        card = await repo.get_card(await add_card(session_factory, "SSO"), WORKSPACE_ID)

        await service.enrich_card(integration, card)
        result = await service.enrich_card(integration, card)

        assert len(result.links) == 2

    async def test_no_matches_writes_nothing(self, service, repo, vault, session_factory, hubspot):
        _route_search(hubspot)
        integration, _, _ = await _mapped_integration(repo, vault)
        card_id = await add_card(session_factory, "Dark mode")
        card = await repo.get_card(card_id, WORKSPACE_ID)

        result = await service.enrich_card(integration, card)

        assert result.enriched is False
        assert result.deals_found == 0
        assert result.values == {}
        assert await repo.get_custom_field_values(card_id) == {}


# ── Roadmap ──────────────────────────────────────────────────────────────────


class TestEnrichRoadmap:
    async def test_one_failing_card_does_not_stop_the_run(
        self, service, repo, vault, session_factory, hubspot
    ):
        _route_search(hubspot)
        integration, _, _ = await _mapped_integration(repo, vault)
        # Ordered by name: "A-none", "Broken", "SSO"
        for name in ("SSO", "Broken", "A-none"):
            await add_card(session_factory, name, ROADMAP_ID)

        report = await service.enrich_roadmap(integration, ROADMAP_ID)

        assert report.total_cards == 3
        assert [r.card_name for r in report.results] == ["A-none", "Broken", "SSO"]
        assert report.results[1].error is not None
        assert report.results[2].enriched is True
        assert report.enriched == 1
        assert report.failed == 1
        stored = await repo.get_integration(integration.id)
        assert stored.last_synced is not None

    async def test_concurrency_keeps_card_order(self, service, repo, vault, session_factory, hubspot):
        _route_search(hubspot)
        integration, _, _ = await _mapped_integration(repo, vault)
        for name in ("SSO", "Broken", "A-none"):
            await add_card(session_factory, name, ROADMAP_ID)

        report = await service.enrich_roadmap(integration, ROADMAP_ID, concurrency=3)

        assert [r.card_name for r in report.results] == ["A-none", "Broken", "SSO"]
        assert report.failed == 1

    async def test_empty_roadmap_still_stamps_last_synced(self, service, repo, vault):
        integration, _, _ = await _mapped_integration(repo, vault)

        report = await service.enrich_roadmap(integration, ROADMAP_ID)

        assert report.total_cards == 0
        assert (await repo.get_integration(integration.id)).last_synced is not None
