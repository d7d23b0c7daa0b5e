"""AI-assisted field mapping suggestions.

MappingSuggester summarizes the cached CRM schema, the workspace's existing
custom fields and a sample of card names into a prompt, asks the LLM for a
mapping proposal, and validates the answer against MappingSuggestion. The
output is advisory: nothing is persisted here, and an invalid answer is an
error rather than a partially accepted suggestion.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence

import structlog
from pydantic import ValidationError

from src.app.integrations.errors import MappingSuggestionError
from src.app.integrations.schemas import (
    CrmSchema,
    CustomFieldRead,
    MappingSuggestion,
    PropertyDefinition,
)
from src.app.services.llm import LLMService

logger = structlog.get_logger(__name__)

MAX_DEAL_PROPERTIES = 30
MAX_SAMPLE_CARDS = 20
INCLUDED_HUBSPOT_PROPERTIES = frozenset({"hs_deal_stage_probability", "hs_acv"})
COMPANY_PROPERTIES = (
    "name",
    "domain",
    "industry",
    "annualrevenue",
    "numberofemployees",
    "city",
    "country",
)

SYSTEM_PROMPT = """You are a data integration expert. You analyze HubSpot CRM schemas and suggest how to map HubSpot data to a product roadmap tool's custom fields.

You MUST respond with valid JSON only, no markdown and no explanation. The response must match this schema:
{
  "matching_strategy": "property_search",
  "matching_config": {
    "search_properties": ["dealname", "description"],
    "min_confidence": 0.7
  },
  "field_mappings": [
    {
      "crm_property": "amount",
      "crm_object": "deal",
      "aggregation": "sum",
      "custom_field_id": null,
      "custom_field_name": "Revenue Impact",
      "custom_field_type": "number",
      "reasoning": "Why this mapping makes sense"
    }
  ]
}

Rules:
- Suggest 2-5 meaningful field mappings based on the available HubSpot properties
- Use aggregation types: sum, count, avg, max, min, count_unique
- For monetary properties like "amount", suggest sum aggregation
- For company/contact associations, suggest count_unique
- For deal stage properties, suggest count (to see how many deals are in which stage)
- The matching strategy should describe how to link HubSpot deals to roadmap cards
- If an existing custom field matches what you would suggest, set its id in custom_field_id
- Focus on fields that are useful for product prioritization decisions"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def relevant_deal_properties(properties: Sequence[PropertyDefinition]) -> list[PropertyDefinition]:
    """Non-internal deal properties (plus a few useful hs_ ones), capped."""
    relevant = [
        p for p in properties
        if not p.name.startswith("hs_") or p.name in INCLUDED_HUBSPOT_PROPERTIES
    ]
    return relevant[:MAX_DEAL_PROPERTIES]


def build_schema_prompt(
    schema: CrmSchema,
    custom_fields: Sequence[CustomFieldRead],
    card_names: Sequence[str],
) -> str:
    """Render the user prompt describing the CRM schema and workspace."""
    lines = [
        "Analyze this HubSpot CRM schema and suggest how to map it to our roadmap tool.",
        "",
        f"## HubSpot Deal Properties ({len(schema.deal_properties)} total, showing relevant ones)",
    ]
    for prop in relevant_deal_properties(schema.deal_properties):
        line = f"- {prop.name} ({prop.label}): type={prop.type}"
        if prop.description:
            line += f" -- {prop.description}"
        lines.append(line)

    lines += [
        "",
        f"## HubSpot Company Properties ({len(schema.company_properties)} total, showing relevant ones)",
    ]
    for prop in schema.company_properties:
        if prop.name in COMPANY_PROPERTIES:
            lines.append(f"- {prop.name} ({prop.label}): type={prop.type}")

    if schema.pipelines:
        lines += ["", "## Deal Pipelines"]
        for pipeline in schema.pipelines:
            stages = ", ".join(stage.label for stage in pipeline.stages)
            lines.append(f"- {pipeline.label}: stages=[{stages}]")

    if custom_fields:
        lines += ["", "## Existing Roadmap Custom Fields"]
        for field in custom_fields:
            lines.append(f'- "{field.name}" (type: {field.field_type}, id: {field.id})')

    if card_names:
        lines += ["", "## Sample Roadmap Card Names (for matching strategy)"]
        for name in card_names[:MAX_SAMPLE_CARDS]:
            lines.append(f'- "{name}"')

    return "\n".join(lines) + "\n"


def parse_suggestion(text: str) -> MappingSuggestion:
    """Validate raw LLM output as a MappingSuggestion. Code fences are tolerated."""
    cleaned = _CODE_FENCE.sub("", (text or "").strip())
    try:
        return MappingSuggestion.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("mapping_suggestion.invalid_output", error=str(exc)[:200])
        raise MappingSuggestionError("Failed to parse AI suggestions") from exc


class MappingSuggester:
    """Proposes a MappingConfig for a workspace from its CRM schema.

    Args:
        llm_service: LiteLLM-backed completion service.
    """

    def __init__(self, llm_service: LLMService) -> None:
        self._llm = llm_service

    async def suggest(
        self,
        schema: CrmSchema,
        custom_fields: Sequence[CustomFieldRead],
        card_names: Sequence[str],
        workspace_id: str | None = None,
    ) -> MappingSuggestion:
        """Ask the LLM for a mapping proposal.

        Raises:
            ConfigurationError: No LLM provider is configured.
            MappingSuggestionError: The answer is not a valid suggestion.
        """
        prompt = build_schema_prompt(schema, custom_fields, card_names)
        response = await self._llm.completion(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=2048,
            temperature=0.2,
            metadata={"workspace_id": workspace_id, "purpose": "crm_mapping_suggestion"},
        )
        suggestion = parse_suggestion(response.get("content") or "")
        logger.info(
            "mapping_suggestion.generated",
            workspace_id=workspace_id,
            model=response.get("model"),
            field_mappings=len(suggestion.field_mappings),
        )
        return suggestion
