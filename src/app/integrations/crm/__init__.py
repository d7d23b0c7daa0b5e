"""HubSpot CRM layer -- transport, auth, discovery, matching and enrichment.

Provides:
- HubSpotClient: Authenticated REST client with 429 retry/backoff
- HubSpotOAuth: Authorization-code + PKCE flow and refresh exchanges
- TokenManager: Single choke point for valid access tokens (single-flight refresh)
- SchemaDiscoveryService: Property and pipeline discovery
- DealSearchEngine: Batched multi-property deal search
- aggregate: Reduction of matched deals into custom field values
- EnrichmentService: Single-card and roadmap-wide enrichment
- MappingSuggester: AI-proposed field mappings
"""

from src.app.integrations.crm.aggregation import aggregate
from src.app.integrations.crm.client import HubSpotClient, default_client_factory
from src.app.integrations.crm.discovery import SchemaDiscoveryService
from src.app.integrations.crm.enrichment import EnrichmentService
from src.app.integrations.crm.oauth import HubSpotOAuth
from src.app.integrations.crm.search import DealSearchEngine
from src.app.integrations.crm.suggestions import MappingSuggester
from src.app.integrations.crm.tokens import TokenManager

__all__ = [
    "HubSpotClient",
    "default_client_factory",
    "HubSpotOAuth",
    "TokenManager",
    "SchemaDiscoveryService",
    "DealSearchEngine",
    "aggregate",
    "EnrichmentService",
    "MappingSuggester",
]
