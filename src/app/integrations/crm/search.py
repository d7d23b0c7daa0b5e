"""Deal search against the HubSpot CRM search API.

Matching uses one CONTAINS_TOKEN filter group per (term, property) pair.
HubSpot accepts at most three filter groups per search request, so the
groups are sent in sequential batches and the results merged, keeping the
first occurrence of each deal id.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import structlog

from src.app.integrations.crm.client import ClientFactory
from src.app.integrations.crm.tokens import TokenManager
from src.app.integrations.schemas import CrmRecord, IntegrationRead

logger = structlog.get_logger(__name__)

DEAL_SEARCH_PATH = "/crm/v3/objects/deals/search"
DEFAULT_DEAL_PROPERTIES = ("dealname", "amount", "dealstage", "closedate", "pipeline")
MAX_FILTER_GROUPS_PER_REQUEST = 3
SEARCH_PAGE_LIMIT = 50
NAME_SEARCH_LIMIT = 20


def requested_properties(extra_properties: Iterable[str] = ()) -> list[str]:
    """Default deal properties plus extras, ordered and de-duplicated."""
    return list(dict.fromkeys([*DEFAULT_DEAL_PROPERTIES, *extra_properties]))


def build_filter_groups(
    search_terms: Sequence[str], search_properties: Sequence[str]
) -> list[dict[str, Any]]:
    """One single-filter group per (term, property), terms outermost."""
    return [
        {
            "filters": [
                {"propertyName": prop, "operator": "CONTAINS_TOKEN", "value": term}
            ]
        }
        for term in search_terms
        for prop in search_properties
    ]


def batched(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class DealSearchEngine:
    """Finds CRM deals for local cards.

    Args:
        token_manager: Source of valid access tokens.
        client_factory: Builds a HubSpotClient for an access token.
    """

    def __init__(self, token_manager: TokenManager, client_factory: ClientFactory) -> None:
        self._token_manager = token_manager
        self._client_factory = client_factory

    async def search(
        self,
        integration: IntegrationRead,
        search_terms: Sequence[str],
        search_properties: Sequence[str],
        extra_properties: Iterable[str] = (),
    ) -> list[CrmRecord]:
        """Search every (term, property) pair and merge the results.

        Returns deals in first-seen order; no request is made when either
        input is empty.
        """
        terms = [t for t in search_terms if t and t.strip()]
        filter_groups = build_filter_groups(terms, list(search_properties))
        if not filter_groups:
            return []

        access_token = await self._token_manager.get_access_token(integration)
        client = self._client_factory(access_token)
        properties = requested_properties(extra_properties)

        merged: dict[str, CrmRecord] = {}
        batches = batched(filter_groups, MAX_FILTER_GROUPS_PER_REQUEST)
        for batch in batches:
            data = await client.request(
                DEAL_SEARCH_PATH,
                method="POST",
                json={
                    "filterGroups": list(batch),
                    "properties": properties,
                    "limit": SEARCH_PAGE_LIMIT,
                },
            )
            for raw in data.get("results") or []:
                record = CrmRecord.model_validate(raw)
                merged.setdefault(record.id, record)

        logger.info(
            "crm.deal_search",
            integration_id=integration.id,
            terms=len(terms),
            requests=len(batches),
            matches=len(merged),
        )
        return list(merged.values())

    async def search_by_name(
        self,
        integration: IntegrationRead,
        query: str,
        extra_properties: Iterable[str] = (),
        limit: int = NAME_SEARCH_LIMIT,
    ) -> list[CrmRecord]:
        """Ad hoc deal-name search for manual linking."""
        query = query.strip()
        if not query:
            return []

        access_token = await self._token_manager.get_access_token(integration)
        client = self._client_factory(access_token)
        data = await client.request(
            DEAL_SEARCH_PATH,
            method="POST",
            json={
                "filterGroups": build_filter_groups([query], ["dealname"]),
                "properties": requested_properties(extra_properties),
                "limit": limit,
            },
        )
        return [CrmRecord.model_validate(raw) for raw in data.get("results") or []]
