"""CRM integration persistence models.

Integration tables:
- IntegrationModel: One external CRM connection per (workspace, type)
- SchemaCacheModel: Last-discovered CRM schema, one row per integration
- CardLinkModel: Card <-> external record association with match provenance

Host tables the enrichment engine reads and writes (owned by the roadmap
application, modelled here only as far as enrichment needs them):
- CardModel, CustomFieldModel, CustomFieldValueModel

Ids are generated client-side (uuid4) so the same models run on PostgreSQL
and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class IntegrationModel(Base):
    """External CRM connection for a workspace.

    Tokens are stored only as vault blobs. ``field_mapping`` holds the
    serialized MappingConfig document.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "type", name="uq_integration_workspace_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="hubspot")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    auth_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    config: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    field_mapping: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SchemaCacheModel(Base):
    """Cached CRM schema; lists serialized as JSON text."""

    __tablename__ = "crm_schema_cache"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deal_properties: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    company_properties: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    contact_properties: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    pipelines: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class CardLinkModel(Base):
    """Link between a card and one external CRM record."""

    __tablename__ = "crm_card_links"
    __table_args__ = (
        UniqueConstraint(
            "card_id",
            "integration_id",
            "external_object_type",
            "external_object_id",
            name="uq_card_link_external_object",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_object_type: Mapped[str] = mapped_column(String(50), nullable=False)
    external_object_id: Mapped[str] = mapped_column(String(100), nullable=False)
    external_object_name: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    matched_by: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


# ── Host Tables ─────────────────────────────────────────────────────────────


class CardModel(Base):
    """Roadmap card (work item)."""

    __tablename__ = "cards"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    roadmap_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class CustomFieldModel(Base):
    """Workspace custom field definition; CRM-backed fields record their source property."""

    __tablename__ = "custom_fields"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    field_type: Mapped[str] = mapped_column(String(50), nullable=False, default="number")
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_property: Mapped[str | None] = mapped_column(String(200), nullable=True)


class CustomFieldValueModel(Base):
    """Aggregation sink: one text value per (card, custom field)."""

    __tablename__ = "custom_field_values"
    __table_args__ = (
        UniqueConstraint("card_id", "custom_field_id", name="uq_custom_field_value_card_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    custom_field_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
