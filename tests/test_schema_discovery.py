"""Schema discovery tests: normalization and partial-failure tolerance."""

from __future__ import annotations

import pytest

from src.app.integrations.crm.discovery import (
    COMPANY_PROPERTIES_PATH,
    CONTACT_PROPERTIES_PATH,
    DEAL_PIPELINES_PATH,
    DEAL_PROPERTIES_PATH,
    SchemaDiscoveryService,
    normalize_pipeline,
    normalize_property,
)
from src.app.integrations.crm.tokens import TokenManager

from tests.conftest import add_private_app_integration

DEAL_PROPS = {
    "results": [
        {"name": "dealname", "label": "Deal Name", "type": "string", "fieldType": "text"},
        {
            "name": "dealstage",
            "label": "Deal Stage",
            "type": "enumeration",
            "fieldType": "select",
            "options": [{"label": "Closed Won", "value": "closedwon"}],
        },
    ]
}
PIPELINES = {
    "results": [
        {
            "id": "default",
            "label": "Sales Pipeline",
            "stages": [{"id": "appointmentscheduled", "label": "Appointment", "displayOrder": 0}],
        }
    ]
}


@pytest.fixture
def discovery(repo, vault, oauth, client_factory) -> SchemaDiscoveryService:
    return SchemaDiscoveryService(TokenManager(repo, vault, oauth), client_factory)


# ── Normalization ────────────────────────────────────────────────────────────


def test_normalize_property_maps_field_type_and_options():
    prop = normalize_property(DEAL_PROPS["results"][1])
    assert prop.name == "dealstage"
    assert prop.field_type == "select"
    assert prop.description == ""
    assert [(o.label, o.value) for o in prop.options] == [("Closed Won", "closedwon")]


def test_normalize_property_tolerates_nulls():
    prop = normalize_property({"name": "x", "label": None, "description": None, "options": None})
    assert prop.label == ""
    assert prop.options == []


def test_normalize_pipeline_keeps_stage_order():
    pipeline = normalize_pipeline(PIPELINES["results"][0])
    assert pipeline.label == "Sales Pipeline"
    assert pipeline.stages[0].display_order == 0


# ── Discovery ────────────────────────────────────────────────────────────────


class TestDiscover:
    async def test_full_schema(self, discovery, repo, vault, hubspot):
        hubspot.on("GET", DEAL_PROPERTIES_PATH, (200, DEAL_PROPS))
        hubspot.on("GET", COMPANY_PROPERTIES_PATH, (200, {"results": [{"name": "domain"}]}))
        hubspot.on("GET", CONTACT_PROPERTIES_PATH, (200, {"results": [{"name": "email"}]}))
        hubspot.on("GET", DEAL_PIPELINES_PATH, (200, PIPELINES))
        integration = await add_private_app_integration(repo, vault)

        schema = await discovery.discover(integration)

        assert [p.name for p in schema.deal_properties] == ["dealname", "dealstage"]
        assert [p.name for p in schema.company_properties] == ["domain"]
        assert [p.name for p in schema.contact_properties] == ["email"]
        assert schema.pipelines[0].id == "default"
        bearer = hubspot.requests[0].headers["Authorization"]
        assert bearer == "Bearer pat-token"

    async def test_failing_fetch_yields_partial_schema(self, discovery, repo, vault, hubspot):
        hubspot.on("GET", DEAL_PROPERTIES_PATH, (200, DEAL_PROPS))
        hubspot.on("GET", COMPANY_PROPERTIES_PATH, (403, {"message": "missing scope"}))
        hubspot.on("GET", CONTACT_PROPERTIES_PATH, (200, {"results": [{"name": "email"}]}))
        hubspot.on("GET", DEAL_PIPELINES_PATH, (500, "boom"))
        integration = await add_private_app_integration(repo, vault)

        schema = await discovery.discover(integration)

        assert len(schema.deal_properties) == 2
        assert schema.company_properties == []
        assert len(schema.contact_properties) == 1
        assert schema.pipelines == []

    async def test_malformed_body_empties_only_that_piece(self, discovery, repo, vault, hubspot):
        hubspot.on("GET", DEAL_PROPERTIES_PATH, (200, DEAL_PROPS))
        hubspot.on("GET", COMPANY_PROPERTIES_PATH, (200, "<html>not json</html>"))
        hubspot.on("GET", CONTACT_PROPERTIES_PATH, (200, {"results": [{"name": "email"}]}))
        hubspot.on("GET", DEAL_PIPELINES_PATH, (200, PIPELINES))
        integration = await add_private_app_integration(repo, vault)

        schema = await discovery.discover(integration)

        assert len(schema.deal_properties) == 2
        assert schema.company_properties == []
        assert [p.name for p in schema.contact_properties] == ["email"]
        assert schema.pipelines[0].id == "default"

    async def test_schema_cache_is_overwritten(self, discovery, repo, vault, hubspot):
        hubspot.on("GET", DEAL_PROPERTIES_PATH, (200, DEAL_PROPS), (200, {"results": []}))
        integration = await add_private_app_integration(repo, vault)

        await repo.upsert_schema_cache(integration.id, await discovery.discover(integration))
        await repo.upsert_schema_cache(integration.id, await discovery.discover(integration))

        cached = await repo.get_schema_cache(integration.id)
        assert cached.deal_properties == []
        assert cached.fetched_at is not None
