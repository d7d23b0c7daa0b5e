"""Add CRM integration tables and the host tables enrichment writes to.

Revision ID: 001_crm_integrations
Revises:
Create Date: 2026-10-17

Creates:
- integrations: One CRM connection per (workspace, type), encrypted tokens
- crm_schema_cache: Last discovered CRM schema per integration
- crm_card_links: Card <-> CRM record links with match provenance
- cards, custom_fields, custom_field_values: Minimal host tables

Schema cache and card links cascade on integration delete; the repository
also deletes them explicitly in the disconnect transaction.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_crm_integrations"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── integrations ────────────────────────────────────────────────────

    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.String(100), nullable=False),
        sa.Column("type", sa.String(50), nullable=False, server_default="hubspot"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("auth_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("field_mapping", sa.Text(), nullable=True),
        sa.Column("last_synced", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("workspace_id", "type", name="uq_integration_workspace_type"),
    )
    op.create_index("ix_integrations_workspace_id", "integrations", ["workspace_id"])

    # ── crm_schema_cache ────────────────────────────────────────────────

    op.create_table(
        "crm_schema_cache",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "integration_id",
            sa.Uuid(),
            sa.ForeignKey("integrations.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("deal_properties", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("company_properties", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("contact_properties", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("pipelines", sa.Text(), nullable=False, server_default="[]"),
        sa.Column(
            "fetched_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
        ),
    )

    # ── crm_card_links ──────────────────────────────────────────────────

    op.create_table(
        "crm_card_links",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("card_id", sa.Uuid(), nullable=False),
        sa.Column(
            "integration_id",
            sa.Uuid(),
            sa.ForeignKey("integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_object_type", sa.String(50), nullable=False),
        sa.Column("external_object_id", sa.String(100), nullable=False),
        sa.Column("external_object_name", sa.String(500), nullable=False, server_default=""),
        sa.Column("matched_by", sa.String(20), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "card_id",
            "integration_id",
            "external_object_type",
            "external_object_id",
            name="uq_card_link_external_object",
        ),
    )
    op.create_index("ix_crm_card_links_card_id", "crm_card_links", ["card_id"])
    op.create_index("ix_crm_card_links_integration_id", "crm_card_links", ["integration_id"])

    # ── host tables ─────────────────────────────────────────────────────

    op.create_table(
        "cards",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.String(100), nullable=False),
        sa.Column("roadmap_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
    )
    op.create_index("ix_cards_workspace_id", "cards", ["workspace_id"])
    op.create_index("ix_cards_roadmap_id", "cards", ["roadmap_id"])

    op.create_table(
        "custom_fields",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("field_type", sa.String(50), nullable=False, server_default="number"),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("source_property", sa.String(200), nullable=True),
    )
    op.create_index("ix_custom_fields_workspace_id", "custom_fields", ["workspace_id"])

    op.create_table(
        "custom_field_values",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("card_id", sa.Uuid(), nullable=False),
        sa.Column("custom_field_id", sa.Uuid(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False, server_default=""),
        sa.UniqueConstraint(
            "card_id", "custom_field_id", name="uq_custom_field_value_card_field"
        ),
    )
    op.create_index("ix_custom_field_values_card_id", "custom_field_values", ["card_id"])


def downgrade() -> None:
    op.drop_table("custom_field_values")
    op.drop_table("custom_fields")
    op.drop_table("cards")
    op.drop_table("crm_card_links")
    op.drop_table("crm_schema_cache")
    op.drop_table("integrations")
