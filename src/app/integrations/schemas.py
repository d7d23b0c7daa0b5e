"""Pydantic schemas for the CRM integration layer.

Defines all structured types for connecting, discovering, mapping and enriching:
- Enums: IntegrationType, IntegrationStatus, AuthType, MatchingStrategy,
  AggregationFunction, MatchedBy
- Credentials: TokenPair, AuthorizationRequest
- Integration rows: IntegrationRead, IntegrationPatch (typed partial update)
- Schema discovery: PropertyOption, PropertyDefinition, PipelineStage, Pipeline, CrmSchema
- Mapping contract: MatchingConfig, FieldMapping, MappingConfig, MappingSuggestion
- Matching: CrmRecord, CardLinkRead
- Host data: CardRead, CustomFieldRead
- Enrichment results: CardEnrichmentResult, BulkEnrichmentReport

MappingConfig and the schema cache are persisted as JSON text; their
(de)serialization lives on the types so call sites never parse strings.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class IntegrationType(str, Enum):
    HUBSPOT = "hubspot"


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"


class AuthType(str, Enum):
    """How the integration authenticates against the CRM."""

    OAUTH = "oauth"
    PRIVATE_APP = "private_app"


class MatchingStrategy(str, Enum):
    PROPERTY_SEARCH = "property_search"


class AggregationFunction(str, Enum):
    """Known reductions. Unknown names are tolerated and reduce like COUNT."""

    SUM = "sum"
    COUNT = "count"
    AVG = "avg"
    MAX = "max"
    MIN = "min"
    COUNT_UNIQUE = "count_unique"


class MatchedBy(str, Enum):
    """Link provenance."""

    MANUAL = "manual"
    AUTO = "auto"


# ── Credentials ─────────────────────────────────────────────────────────────


class TokenPair(BaseModel):
    """Token endpoint response."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in)


class AuthorizationRequest(BaseModel):
    """Authorization URL (without state) plus the PKCE verifier that goes with it."""

    url: str
    code_verifier: str

    def with_state(self, state: str) -> str:
        return f"{self.url}&{urlencode({'state': state})}"


# ── Integration Rows ────────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Full integration row, including encrypted credentials. Never serialized to clients."""

    id: str
    workspace_id: str
    type: IntegrationType = IntegrationType.HUBSPOT
    status: IntegrationStatus = IntegrationStatus.ACTIVE
    auth_token_encrypted: str | None = None
    refresh_token_encrypted: str | None = None
    token_expires_at: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    field_mapping: MappingConfig | None = None
    last_synced: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def auth_type(self) -> AuthType:
        return AuthType(self.config.get("auth_type", AuthType.OAUTH.value))

    @property
    def is_private_app(self) -> bool:
        return self.auth_type is AuthType.PRIVATE_APP


class IntegrationPatch(BaseModel):
    """Typed partial update for an integration.

    Only fields explicitly set on the instance are applied (see
    ``changes()``), so ``IntegrationPatch(status=...)`` never clears tokens.
    """

    model_config = ConfigDict(extra="forbid")

    status: IntegrationStatus | None = None
    auth_token_encrypted: str | None = None
    refresh_token_encrypted: str | None = None
    token_expires_at: datetime | None = None
    config: dict[str, Any] | None = None
    field_mapping: MappingConfig | None = None
    last_synced: datetime | None = None

    def changes(self) -> list[tuple[str, Any]]:
        """(field, value) pairs for every explicitly provided field."""
        return [
            (name, getattr(self, name))
            for name in type(self).model_fields
            if name in self.model_fields_set
        ]


# ── Schema Discovery ────────────────────────────────────────────────────────


class PropertyOption(BaseModel):
    label: str = ""
    value: str = ""


class PropertyDefinition(BaseModel):
    """Normalized CRM property definition."""

    name: str
    label: str = ""
    type: str = ""
    field_type: str = ""
    description: str = ""
    options: list[PropertyOption] = Field(default_factory=list)


class PipelineStage(BaseModel):
    id: str
    label: str = ""
    display_order: int | None = None


class Pipeline(BaseModel):
    id: str
    label: str = ""
    stages: list[PipelineStage] = Field(default_factory=list)


PropertyList = TypeAdapter(list[PropertyDefinition])
PipelineList = TypeAdapter(list[Pipeline])


class CrmSchema(BaseModel):
    """Last-discovered CRM schema. Overwritten wholesale on every discovery."""

    schema_version: int = 1
    deal_properties: list[PropertyDefinition] = Field(default_factory=list)
    company_properties: list[PropertyDefinition] = Field(default_factory=list)
    contact_properties: list[PropertyDefinition] = Field(default_factory=list)
    pipelines: list[Pipeline] = Field(default_factory=list)
    fetched_at: datetime | None = None

    def deal_property_names(self) -> set[str]:
        return {p.name for p in self.deal_properties}


# ── Mapping Contract ────────────────────────────────────────────────────────


class MatchingConfig(BaseModel):
    """Which CRM properties are searched for a card's name."""

    search_properties: list[str] = Field(default_factory=lambda: ["dealname"])
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    @field_validator("search_properties")
    @classmethod
    def _ordered_unique(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for prop in value:
            prop = prop.strip()
            if prop:
                seen.setdefault(prop, None)
        return list(seen) or ["dealname"]


class FieldMapping(BaseModel):
    """Binds one CRM property + aggregation to one local custom field."""

    crm_property: str
    crm_object: str = "deal"
    aggregation: str = AggregationFunction.COUNT.value
    custom_field_id: str | None = None
    custom_field_name: str | None = None
    custom_field_type: str = "number"
    reasoning: str = ""


class MappingConfig(BaseModel):
    """Persisted contract for matching CRM records and reducing them into field values."""

    version: int = 1
    matching_strategy: MatchingStrategy = MatchingStrategy.PROPERTY_SEARCH
    matching_config: MatchingConfig = Field(default_factory=MatchingConfig)
    field_mappings: list[FieldMapping] = Field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return bool(self.field_mappings)

    def required_properties(self) -> list[str]:
        """CRM properties the field mappings need fetched, in mapping order."""
        return list(dict.fromkeys(m.crm_property for m in self.field_mappings))

    def to_document(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_document(cls, document: str | None) -> MappingConfig | None:
        if not document:
            return None
        return cls.model_validate_json(document)


class MappingSuggestion(BaseModel):
    """AI-proposed mapping. Same shape as MappingConfig minus persistence metadata."""

    matching_strategy: MatchingStrategy = MatchingStrategy.PROPERTY_SEARCH
    matching_config: MatchingConfig = Field(default_factory=MatchingConfig)
    field_mappings: list[FieldMapping] = Field(min_length=1)


# ── Matching ────────────────────────────────────────────────────────────────


class CrmRecord(BaseModel):
    """A CRM object returned by search."""

    model_config = ConfigDict(extra="ignore")

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @property
    def display_name(self) -> str:
        return self.properties.get("dealname") or ""


class CardLinkRead(BaseModel):
    """Association between a card and one external record."""

    id: str
    card_id: str
    integration_id: str
    integration_type: str | None = None
    external_object_type: str
    external_object_id: str
    external_object_name: str = ""
    matched_by: MatchedBy
    created_at: datetime | None = None


# ── Host Data ───────────────────────────────────────────────────────────────


class CardRead(BaseModel):
    id: str
    workspace_id: str
    roadmap_id: str | None = None
    name: str
    description: str | None = None


class CustomFieldRead(BaseModel):
    id: str
    workspace_id: str
    name: str
    field_type: str = "number"
    source: str | None = None
    source_property: str | None = None


# ── Enrichment Results ──────────────────────────────────────────────────────


class CardEnrichmentResult(BaseModel):
    """Outcome for one card. ``error`` is set instead of raising on failure."""

    card_id: str
    card_name: str
    deals_found: int = 0
    enriched: bool = False
    values: dict[str, str] = Field(default_factory=dict)
    links: list[CardLinkRead] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BulkEnrichmentReport(BaseModel):
    results: list[CardEnrichmentResult] = Field(default_factory=list)
    total_cards: int = 0
    enriched: int = 0
    failed: int = 0


IntegrationRead.model_rebuild()
IntegrationPatch.model_rebuild()
