"""CRM integration module -- connections, mappings, links and enrichment.

Provides SQLAlchemy models (IntegrationModel, SchemaCacheModel, CardLinkModel
and the host card/custom-field tables), Pydantic schemas (MappingConfig,
CrmSchema, enrichment results), the error taxonomy, IntegrationRepository for
async persistence, and IntegrationService for connection management.
"""
