"""CRM schema discovery.

Fetches deal, company and contact property definitions plus deal pipelines
concurrently and normalizes them into a CrmSchema. A failing fetch yields an
empty list for that piece so a partial schema is still usable.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.app.integrations.crm.client import ClientFactory, HubSpotClient
from src.app.integrations.crm.tokens import TokenManager
from src.app.integrations.errors import CRMError
from src.app.integrations.schemas import (
    CrmSchema,
    IntegrationRead,
    Pipeline,
    PipelineStage,
    PropertyDefinition,
    PropertyOption,
)

logger = structlog.get_logger(__name__)

DEAL_PROPERTIES_PATH = "/crm/v3/properties/deals"
COMPANY_PROPERTIES_PATH = "/crm/v3/properties/companies"
CONTACT_PROPERTIES_PATH = "/crm/v3/properties/contacts"
DEAL_PIPELINES_PATH = "/crm/v3/pipelines/deals"


def normalize_property(raw: dict[str, Any]) -> PropertyDefinition:
    return PropertyDefinition(
        name=raw.get("name", ""),
        label=raw.get("label") or "",
        type=raw.get("type") or "",
        field_type=raw.get("fieldType") or "",
        description=raw.get("description") or "",
        options=[
            PropertyOption(label=str(o.get("label", "")), value=str(o.get("value", "")))
            for o in raw.get("options") or []
        ],
    )


def normalize_pipeline(raw: dict[str, Any]) -> Pipeline:
    return Pipeline(
        id=str(raw.get("id", "")),
        label=raw.get("label") or "",
        stages=[
            PipelineStage(
                id=str(s.get("id", "")),
                label=s.get("label") or "",
                display_order=s.get("displayOrder"),
            )
            for s in raw.get("stages") or []
        ],
    )


class SchemaDiscoveryService:
    """Reads the connected CRM's schema.

    Args:
        token_manager: Source of valid access tokens.
        client_factory: Builds a HubSpotClient for an access token.
    """

    def __init__(self, token_manager: TokenManager, client_factory: ClientFactory) -> None:
        self._token_manager = token_manager
        self._client_factory = client_factory

    async def discover(self, integration: IntegrationRead) -> CrmSchema:
        """Fetch and normalize the integration's schema. Does not persist it."""
        access_token = await self._token_manager.get_access_token(integration)
        client = self._client_factory(access_token)

        deal_props, company_props, contact_props, pipelines = await asyncio.gather(
            self._fetch_results(client, DEAL_PROPERTIES_PATH, integration.id),
            self._fetch_results(client, COMPANY_PROPERTIES_PATH, integration.id),
            self._fetch_results(client, CONTACT_PROPERTIES_PATH, integration.id),
            self._fetch_results(client, DEAL_PIPELINES_PATH, integration.id),
        )

        schema = CrmSchema(
            deal_properties=[normalize_property(p) for p in deal_props],
            company_properties=[normalize_property(p) for p in company_props],
            contact_properties=[normalize_property(p) for p in contact_props],
            pipelines=[normalize_pipeline(p) for p in pipelines],
        )
        logger.info(
            "crm.schema_discovered",
            integration_id=integration.id,
            deal_properties=len(schema.deal_properties),
            company_properties=len(schema.company_properties),
            contact_properties=len(schema.contact_properties),
            pipelines=len(schema.pipelines),
        )
        return schema

    @staticmethod
    async def _fetch_results(
        client: HubSpotClient, path: str, integration_id: str
    ) -> list[dict[str, Any]]:
        try:
            data = await client.request(path)
        except CRMError as exc:
            logger.warning(
                "crm.schema_fetch_failed",
                integration_id=integration_id,
                path=path,
                error=str(exc),
            )
            return []
        results = data.get("results") if isinstance(data, dict) else None
        return results if isinstance(results, list) else []
