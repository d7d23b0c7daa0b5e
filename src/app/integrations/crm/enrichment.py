"""Card enrichment from CRM deals.

EnrichmentService composes search, linking and aggregation:

1. Search deals using the card name as the only term.
2. Link every match to the card (matched_by=auto, idempotent).
3. Aggregate the matches per field mapping and write the custom field values.

Bulk enrichment runs that pipeline over every card of a roadmap. A card's
failure is recorded on its result and the run continues; last_synced is
stamped once after all cards are processed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from src.app.core.monitoring import enrichment_items_total
from src.app.integrations.crm.aggregation import aggregate
from src.app.integrations.crm.search import DealSearchEngine
from src.app.integrations.errors import MappingNotConfiguredError
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    BulkEnrichmentReport,
    CardEnrichmentResult,
    CardRead,
    IntegrationPatch,
    IntegrationRead,
    MappingConfig,
    MatchedBy,
)

logger = structlog.get_logger(__name__)

DEAL_OBJECT_TYPE = "deal"


def require_mapping(integration: IntegrationRead) -> MappingConfig:
    """Return the integration's mapping or raise if none is configured."""
    mapping = integration.field_mapping
    if mapping is None or not mapping.is_configured:
        raise MappingNotConfiguredError(
            "No field mappings configured. Set up mappings first."
        )
    return mapping


class EnrichmentService:
    """Drives single-card and roadmap-wide enrichment.

    Args:
        repository: Integration persistence (links, cards, field values).
        search_engine: Deal search against the CRM.
    """

    def __init__(
        self, repository: IntegrationRepository, search_engine: DealSearchEngine
    ) -> None:
        self._repository = repository
        self._search_engine = search_engine

    async def enrich_card(
        self, integration: IntegrationRead, card: CardRead
    ) -> CardEnrichmentResult:
        """Enrich one card. Errors propagate to the caller."""
        mapping = require_mapping(integration)
        return await self._enrich(integration, mapping, card)

    async def enrich_roadmap(
        self,
        integration: IntegrationRead,
        roadmap_id: str,
        concurrency: int = 1,
    ) -> BulkEnrichmentReport:
        """Enrich every card of a roadmap, continuing past per-card failures.

        Results keep the roadmap's card order regardless of ``concurrency``.
        """
        mapping = require_mapping(integration)
        cards = await self._repository.list_cards(roadmap_id, integration.workspace_id)
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(card: CardRead) -> CardEnrichmentResult:
            async with semaphore:
                return await self._enrich_safely(integration, mapping, card)

        results = list(await asyncio.gather(*(run(card) for card in cards)))

        await self._repository.update_integration(
            integration.id,
            IntegrationPatch(last_synced=datetime.now(timezone.utc)),
        )

        report = BulkEnrichmentReport(
            results=results,
            total_cards=len(cards),
            enriched=sum(1 for r in results if r.enriched),
            failed=sum(1 for r in results if not r.ok),
        )
        logger.info(
            "enrichment.roadmap_completed",
            integration_id=integration.id,
            roadmap_id=roadmap_id,
            total_cards=report.total_cards,
            enriched=report.enriched,
            failed=report.failed,
        )
        return report

    async def _enrich_safely(
        self, integration: IntegrationRead, mapping: MappingConfig, card: CardRead
    ) -> CardEnrichmentResult:
        try:
            return await self._enrich(integration, mapping, card)
        except Exception as exc:
            enrichment_items_total.labels(outcome="failed").inc()
            logger.warning(
                "enrichment.card_failed",
                integration_id=integration.id,
                card_id=card.id,
                error=str(exc),
            )
            return CardEnrichmentResult(card_id=card.id, card_name=card.name, error=str(exc))

    async def _enrich(
        self, integration: IntegrationRead, mapping: MappingConfig, card: CardRead
    ) -> CardEnrichmentResult:
        deals = await self._search_engine.search(
            integration,
            [card.name],
            mapping.matching_config.search_properties,
            extra_properties=mapping.required_properties(),
        )

        values: dict[str, str] = {}
        if deals:
            for deal in deals:
                await self._repository.upsert_link(
                    card.id,
                    integration.id,
                    DEAL_OBJECT_TYPE,
                    deal.id,
                    deal.display_name,
                    MatchedBy.AUTO,
                )
            values = aggregate(deals, mapping.field_mappings)
            for custom_field_id, value in values.items():
                await self._repository.upsert_custom_field_value(card.id, custom_field_id, value)

        enrichment_items_total.labels(outcome="enriched" if deals else "unmatched").inc()
        links = await self._repository.list_links(card.id, integration.id)
        logger.debug(
            "enrichment.card_completed",
            card_id=card.id,
            deals_found=len(deals),
        )
        return CardEnrichmentResult(
            card_id=card.id,
            card_name=card.name,
            deals_found=len(deals),
            enriched=bool(deals),
            values=values,
            links=links,
        )
