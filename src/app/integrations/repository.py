"""Integration repository -- async persistence for integrations, schema cache, links.

Provides IntegrationRepository on top of an async_sessionmaker.
Handles serialization between Pydantic schemas and SQLAlchemy models for
integrations, the schema cache, card links, and the host tables enrichment
touches (cards, custom fields, custom field values).

Partial updates go through IntegrationPatch and a fixed allow-list of
columns. Structured documents (MappingConfig, schema lists) are serialized
by their Pydantic types, never by string manipulation here.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.integrations.models import (
    CardLinkModel,
    CardModel,
    CustomFieldModel,
    CustomFieldValueModel,
    IntegrationModel,
    SchemaCacheModel,
)
from src.app.integrations.schemas import (
    CardLinkRead,
    CardRead,
    CrmSchema,
    CustomFieldRead,
    IntegrationPatch,
    IntegrationRead,
    MappingConfig,
    MatchedBy,
    PipelineList,
    PropertyList,
)

logger = structlog.get_logger(__name__)

# Columns an IntegrationPatch may touch
_PATCHABLE_FIELDS = frozenset({
    "status",
    "auth_token_encrypted",
    "refresh_token_encrypted",
    "token_expires_at",
    "config",
    "field_mapping",
    "last_synced",
})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    """Parse a UUID, returning None for anything malformed."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _model_to_integration(model: IntegrationModel) -> IntegrationRead:
    """Convert IntegrationModel to IntegrationRead schema."""
    return IntegrationRead(
        id=str(model.id),
        workspace_id=model.workspace_id,
        type=model.type,
        status=model.status,
        auth_token_encrypted=model.auth_token_encrypted,
        refresh_token_encrypted=model.refresh_token_encrypted,
        token_expires_at=_as_utc(model.token_expires_at),
        config=model.config or {},
        field_mapping=MappingConfig.from_document(model.field_mapping),
        last_synced=_as_utc(model.last_synced),
        created_at=_as_utc(model.created_at),
        updated_at=_as_utc(model.updated_at),
    )


def _model_to_link(
    model: CardLinkModel, integration_type: str | None = None
) -> CardLinkRead:
    """Convert CardLinkModel to CardLinkRead, tagged with its integration type."""
    return CardLinkRead(
        id=str(model.id),
        card_id=str(model.card_id),
        integration_id=str(model.integration_id),
        integration_type=integration_type,
        external_object_type=model.external_object_type,
        external_object_id=model.external_object_id,
        external_object_name=model.external_object_name or "",
        matched_by=MatchedBy(model.matched_by),
        created_at=_as_utc(model.created_at),
    )


def _model_to_schema(model: SchemaCacheModel) -> CrmSchema:
    """Convert SchemaCacheModel to CrmSchema."""
    return CrmSchema(
        schema_version=model.schema_version,
        deal_properties=PropertyList.validate_json(model.deal_properties or "[]"),
        company_properties=PropertyList.validate_json(model.company_properties or "[]"),
        contact_properties=PropertyList.validate_json(model.contact_properties or "[]"),
        pipelines=PipelineList.validate_json(model.pipelines or "[]"),
        fetched_at=_as_utc(model.fetched_at),
    )


def _model_to_card(model: CardModel) -> CardRead:
    return CardRead(
        id=str(model.id),
        workspace_id=model.workspace_id,
        roadmap_id=str(model.roadmap_id) if model.roadmap_id else None,
        name=model.name,
        description=model.description,
    )


def _model_to_custom_field(model: CustomFieldModel) -> CustomFieldRead:
    return CustomFieldRead(
        id=str(model.id),
        workspace_id=model.workspace_id,
        name=model.name,
        field_type=model.field_type,
        source=model.source,
        source_property=model.source_property,
    )


def _patch_values(patch: IntegrationPatch) -> dict[str, Any]:
    """Column values for the explicitly provided, allow-listed patch fields."""
    values: dict[str, Any] = {}
    for field_name, value in patch.changes():
        if field_name not in _PATCHABLE_FIELDS:
            raise ValueError(f"Field is not patchable: {field_name}")
        if field_name == "status" and value is not None:
            value = value.value
        elif field_name == "field_mapping" and value is not None:
            value = value.to_document()
        values[field_name] = value
    return values


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async CRUD operations for integrations and everything hanging off them.

    Args:
        session_factory: async_sessionmaker; each method opens and closes its
            own session with `async with`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────────

    async def get_integration(self, integration_id: str) -> IntegrationRead | None:
        """Get an integration by ID (no workspace scoping; internal use)."""
        parsed = _parse_uuid(integration_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            model = await session.get(IntegrationModel, parsed)
            return _model_to_integration(model) if model else None

    async def get_integration_for_workspace(
        self, integration_id: str, workspace_id: str
    ) -> IntegrationRead | None:
        """Get an integration only if it belongs to the workspace."""
        parsed = _parse_uuid(integration_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            stmt = select(IntegrationModel).where(
                IntegrationModel.id == parsed,
                IntegrationModel.workspace_id == workspace_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_integration(model) if model else None

    async def list_integrations(self, workspace_id: str) -> list[IntegrationRead]:
        """List all integrations for a workspace."""
        async with self._session_factory() as session:
            stmt = (
                select(IntegrationModel)
                .where(IntegrationModel.workspace_id == workspace_id)
                .order_by(IntegrationModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]

    async def upsert_integration(
        self, workspace_id: str, integration_type: str, patch: IntegrationPatch
    ) -> IntegrationRead:
        """Create or update the single integration for (workspace, type).

        Existing rows get only the patch's explicitly set fields; new rows
        are created from them.
        """
        values = _patch_values(patch)
        async with self._session_factory() as session:
            stmt = select(IntegrationModel).where(
                IntegrationModel.workspace_id == workspace_id,
                IntegrationModel.type == integration_type,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

            if model is None:
                model = IntegrationModel(
                    workspace_id=workspace_id,
                    type=integration_type,
                    **values,
                )
                session.add(model)
                created = True
            else:
                for field_name, value in values.items():
                    setattr(model, field_name, value)
                created = False

            await session.commit()
            await session.refresh(model)
            logger.info(
                "integration.upserted",
                integration_id=str(model.id),
                workspace_id=workspace_id,
                created=created,
            )
            return _model_to_integration(model)

    async def update_integration(
        self, integration_id: str, patch: IntegrationPatch
    ) -> IntegrationRead | None:
        """Apply a partial update. Returns the updated row, or None if missing."""
        parsed = _parse_uuid(integration_id)
        if parsed is None:
            return None
        values = _patch_values(patch)
        async with self._session_factory() as session:
            if values:
                await session.execute(
                    update(IntegrationModel)
                    .where(IntegrationModel.id == parsed)
                    .values(**values)
                )
                await session.commit()
            model = await session.get(IntegrationModel, parsed, populate_existing=True)
            return _model_to_integration(model) if model else None

    async def delete_integration(self, integration_id: str) -> bool:
        """Delete an integration with its schema cache and card links.

        Dependents are removed explicitly in the same transaction so no
        orphans remain even where the database does not enforce cascades.
        """
        parsed = _parse_uuid(integration_id)
        if parsed is None:
            return False
        async with self._session_factory() as session:
            await session.execute(
                delete(SchemaCacheModel).where(SchemaCacheModel.integration_id == parsed)
            )
            links = await session.execute(
                delete(CardLinkModel).where(CardLinkModel.integration_id == parsed)
            )
            result = await session.execute(
                delete(IntegrationModel).where(IntegrationModel.id == parsed)
            )
            await session.commit()
            deleted = result.rowcount > 0
            logger.info(
                "integration.deleted",
                integration_id=integration_id,
                deleted=deleted,
                links_removed=links.rowcount,
            )
            return deleted

    # ── Schema Cache ────────────────────────────────────────────────────────

    async def upsert_schema_cache(self, integration_id: str, schema: CrmSchema) -> CrmSchema:
        """Overwrite the cached schema for an integration."""
        parsed = uuid.UUID(integration_id)
        async with self._session_factory() as session:
            stmt = select(SchemaCacheModel).where(SchemaCacheModel.integration_id == parsed)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = SchemaCacheModel(integration_id=parsed)
                session.add(model)

            model.schema_version = schema.schema_version
            model.deal_properties = PropertyList.dump_json(schema.deal_properties).decode()
            model.company_properties = PropertyList.dump_json(schema.company_properties).decode()
            model.contact_properties = PropertyList.dump_json(schema.contact_properties).decode()
            model.pipelines = PipelineList.dump_json(schema.pipelines).decode()
            model.fetched_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(model)
            return _model_to_schema(model)

    async def get_schema_cache(self, integration_id: str) -> CrmSchema | None:
        """Get the cached schema, or None if discovery has not run."""
        parsed = _parse_uuid(integration_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            stmt = select(SchemaCacheModel).where(SchemaCacheModel.integration_id == parsed)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_schema(model) if model else None

    # ── Card Links ──────────────────────────────────────────────────────────

    async def upsert_link(
        self,
        card_id: str,
        integration_id: str,
        object_type: str,
        object_id: str,
        display_name: str | None,
        matched_by: MatchedBy,
    ) -> CardLinkRead:
        """Return the existing link for the four-part key, or insert a new one.

        An existing link is returned untouched: re-running enrichment never
        duplicates a link or downgrades manual provenance to auto.
        """
        card_uuid = uuid.UUID(card_id)
        integration_uuid = uuid.UUID(integration_id)
        key = (
            CardLinkModel.card_id == card_uuid,
            CardLinkModel.integration_id == integration_uuid,
            CardLinkModel.external_object_type == object_type,
            CardLinkModel.external_object_id == str(object_id),
        )
        async with self._session_factory() as session:
            integration_type = await session.scalar(
                select(IntegrationModel.type).where(IntegrationModel.id == integration_uuid)
            )
            result = await session.execute(select(CardLinkModel).where(*key))
            existing = result.scalar_one_or_none()
            if existing is not None:
                return _model_to_link(existing, integration_type)

            model = CardLinkModel(
                card_id=card_uuid,
                integration_id=integration_uuid,
                external_object_type=object_type,
                external_object_id=str(object_id),
                external_object_name=display_name or "",
                matched_by=matched_by.value,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                # Lost an insert race; the winner's row is the link
                await session.rollback()
                result = await session.execute(select(CardLinkModel).where(*key))
                return _model_to_link(result.scalar_one(), integration_type)

            await session.refresh(model)
            logger.debug(
                "card_link.created",
                card_id=card_id,
                external_object_id=object_id,
                matched_by=matched_by.value,
            )
            return _model_to_link(model, integration_type)

    async def list_links(
        self, card_id: str, integration_id: str | None = None
    ) -> list[CardLinkRead]:
        """List links for a card, optionally restricted to one integration."""
        card_uuid = _parse_uuid(card_id)
        if card_uuid is None:
            return []
        async with self._session_factory() as session:
            stmt = (
                select(CardLinkModel, IntegrationModel.type)
                .join(IntegrationModel, IntegrationModel.id == CardLinkModel.integration_id)
                .where(CardLinkModel.card_id == card_uuid)
            )
            if integration_id is not None:
                stmt = stmt.where(CardLinkModel.integration_id == _parse_uuid(integration_id))
            stmt = stmt.order_by(CardLinkModel.created_at)
            result = await session.execute(stmt)
            return [_model_to_link(link, link_type) for link, link_type in result.all()]

    async def delete_link(self, card_id: str, link_id: str) -> bool:
        """Delete one link, scoped to its card."""
        card_uuid = _parse_uuid(card_id)
        link_uuid = _parse_uuid(link_id)
        if card_uuid is None or link_uuid is None:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CardLinkModel).where(
                    CardLinkModel.id == link_uuid,
                    CardLinkModel.card_id == card_uuid,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Cards ───────────────────────────────────────────────────────────────

    async def get_card(self, card_id: str, workspace_id: str) -> CardRead | None:
        """Get a card only if it belongs to the workspace."""
        parsed = _parse_uuid(card_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            stmt = select(CardModel).where(
                CardModel.id == parsed,
                CardModel.workspace_id == workspace_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_card(model) if model else None

    async def list_cards(self, roadmap_id: str, workspace_id: str) -> list[CardRead]:
        """List a roadmap's cards in stable (name, id) order."""
        parsed = _parse_uuid(roadmap_id)
        if parsed is None:
            return []
        async with self._session_factory() as session:
            stmt = (
                select(CardModel)
                .where(
                    CardModel.roadmap_id == parsed,
                    CardModel.workspace_id == workspace_id,
                )
                .order_by(CardModel.name, CardModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_card(m) for m in result.scalars().all()]

    async def list_card_names(self, workspace_id: str, limit: int = 50) -> list[str]:
        """Sample card names for the mapping-suggestion prompt."""
        async with self._session_factory() as session:
            stmt = (
                select(CardModel.name)
                .where(CardModel.workspace_id == workspace_id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ── Custom Fields ───────────────────────────────────────────────────────

    async def list_custom_fields(self, workspace_id: str) -> list[CustomFieldRead]:
        async with self._session_factory() as session:
            stmt = select(CustomFieldModel).where(CustomFieldModel.workspace_id == workspace_id)
            result = await session.execute(stmt)
            return [_model_to_custom_field(m) for m in result.scalars().all()]

    async def get_custom_field(
        self, workspace_id: str, custom_field_id: str
    ) -> CustomFieldRead | None:
        parsed = _parse_uuid(custom_field_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            stmt = select(CustomFieldModel).where(
                CustomFieldModel.id == parsed,
                CustomFieldModel.workspace_id == workspace_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_custom_field(model) if model else None

    async def create_custom_field(
        self,
        workspace_id: str,
        name: str,
        field_type: str = "number",
        source: str | None = None,
        source_property: str | None = None,
    ) -> CustomFieldRead:
        async with self._session_factory() as session:
            model = CustomFieldModel(
                workspace_id=workspace_id,
                name=name,
                field_type=field_type,
                source=source,
                source_property=source_property,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "custom_field.created",
                custom_field_id=str(model.id),
                workspace_id=workspace_id,
                source_property=source_property,
            )
            return _model_to_custom_field(model)

    async def upsert_custom_field_value(
        self, card_id: str, custom_field_id: str, value: str
    ) -> None:
        """Write the value for (card, field), replacing any previous one."""
        card_uuid = uuid.UUID(card_id)
        field_uuid = uuid.UUID(custom_field_id)
        async with self._session_factory() as session:
            stmt = select(CustomFieldValueModel).where(
                CustomFieldValueModel.card_id == card_uuid,
                CustomFieldValueModel.custom_field_id == field_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                session.add(
                    CustomFieldValueModel(
                        card_id=card_uuid,
                        custom_field_id=field_uuid,
                        value=value,
                    )
                )
            else:
                model.value = value
            await session.commit()

    async def get_custom_field_values(self, card_id: str) -> dict[str, str]:
        """All stored values for a card keyed by custom field id."""
        card_uuid = _parse_uuid(card_id)
        if card_uuid is None:
            return {}
        async with self._session_factory() as session:
            stmt = select(CustomFieldValueModel).where(
                CustomFieldValueModel.card_id == card_uuid
            )
            result = await session.execute(stmt)
            return {str(m.custom_field_id): m.value for m in result.scalars().all()}
