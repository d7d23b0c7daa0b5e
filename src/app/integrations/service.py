"""Connection management for CRM integrations.

IntegrationService owns the operations that create, reconfigure and remove
an integration: completing the OAuth callback, connecting with a private
app token, saving field mappings (creating missing custom fields), and
disconnecting. Credentials are encrypted with the vault before they reach
the repository; nothing is written when validation fails.
"""

from __future__ import annotations

import structlog

from src.app.core.encryption import CredentialVault
from src.app.integrations.crm.client import ClientFactory
from src.app.integrations.crm.oauth import HubSpotOAuth
from src.app.integrations.crm.tokens import TokenManager
from src.app.integrations.errors import (
    CRMAPIError,
    CRMConnectionError,
    CRMError,
    InvalidCredentialError,
    NotFoundError,
)
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    AuthType,
    FieldMapping,
    IntegrationPatch,
    IntegrationRead,
    IntegrationStatus,
    IntegrationType,
    MappingConfig,
)

logger = structlog.get_logger(__name__)

VALIDATION_PATH = "/crm/v3/objects/deals"
CUSTOM_FIELD_SOURCE = "hubspot"


class IntegrationService:
    """Creates, reconfigures and removes CRM integrations.

    Args:
        repository: Integration persistence.
        vault: Credential vault used to encrypt tokens.
        oauth: HubSpot OAuth client.
        client_factory: Builds a HubSpotClient for an access token.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        vault: CredentialVault,
        oauth: HubSpotOAuth,
        client_factory: ClientFactory,
        token_manager: TokenManager | None = None,
    ) -> None:
        self._repository = repository
        self._vault = vault
        self._oauth = oauth
        self._client_factory = client_factory
        self._token_manager = token_manager

    async def complete_oauth(
        self, workspace_id: str, code: str, code_verifier: str
    ) -> IntegrationRead:
        """Exchange the callback code and store the resulting token pair."""
        tokens = await self._oauth.exchange_code(code, code_verifier)
        patch = IntegrationPatch(
            auth_token_encrypted=self._vault.encrypt(tokens.access_token),
            refresh_token_encrypted=(
                self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
            ),
            token_expires_at=tokens.expires_at(),
            status=IntegrationStatus.ACTIVE,
            config={"auth_type": AuthType.OAUTH.value},
        )
        integration = await self._repository.upsert_integration(
            workspace_id, IntegrationType.HUBSPOT.value, patch
        )
        logger.info(
            "integration.connected",
            integration_id=integration.id,
            workspace_id=workspace_id,
            auth_type=AuthType.OAUTH.value,
        )
        return integration

    async def connect_private_app(self, workspace_id: str, token: str) -> IntegrationRead:
        """Validate a private app token with a live call, then store it.

        Raises:
            InvalidCredentialError: Empty token, or HubSpot rejected it.
        """
        token = (token or "").strip()
        if not token:
            raise InvalidCredentialError("Access token is required")

        client = self._client_factory(token)
        try:
            await client.request(VALIDATION_PATH, params={"limit": 1})
        except CRMAPIError as exc:
            raise InvalidCredentialError(
                f"Invalid token -- HubSpot returned {exc.status}. "
                "Make sure your Private App has the required scopes."
            ) from exc
        except CRMConnectionError as exc:
            raise InvalidCredentialError(
                "Could not reach HubSpot API. Check the token and try again."
            ) from exc
        except CRMError as exc:
            raise InvalidCredentialError(f"Could not validate token: {exc.message}") from exc

        patch = IntegrationPatch(
            auth_token_encrypted=self._vault.encrypt(token),
            refresh_token_encrypted=None,
            token_expires_at=None,
            status=IntegrationStatus.ACTIVE,
            config={"auth_type": AuthType.PRIVATE_APP.value},
        )
        integration = await self._repository.upsert_integration(
            workspace_id, IntegrationType.HUBSPOT.value, patch
        )
        logger.info(
            "integration.connected",
            integration_id=integration.id,
            workspace_id=workspace_id,
            auth_type=AuthType.PRIVATE_APP.value,
        )
        return integration

    async def save_mappings(
        self, integration: IntegrationRead, mapping: MappingConfig
    ) -> MappingConfig:
        """Persist a mapping, creating custom fields named but not yet created.

        Raises:
            NotFoundError: A mapping references a custom field id that does
                not exist in the integration's workspace.
        """
        # Every referenced id is checked before any field is created
        if await self._repository.get_integration(integration.id) is None:
            raise NotFoundError("Integration not found")
        for field_mapping in mapping.field_mappings:
            await self._check_custom_field(integration.workspace_id, field_mapping)

        resolved: list[FieldMapping] = []
        for field_mapping in mapping.field_mappings:
            resolved.append(await self._resolve_custom_field(integration.workspace_id, field_mapping))

        final = mapping.model_copy(update={"field_mappings": resolved})
        updated = await self._repository.update_integration(
            integration.id, IntegrationPatch(field_mapping=final)
        )
        if updated is None:
            raise NotFoundError("Integration not found")

        logger.info(
            "integration.mappings_saved",
            integration_id=integration.id,
            field_mappings=len(final.field_mappings),
            search_properties=final.matching_config.search_properties,
        )
        return final

    async def _check_custom_field(
        self, workspace_id: str, field_mapping: FieldMapping
    ) -> None:
        if not field_mapping.custom_field_id:
            return
        existing = await self._repository.get_custom_field(
            workspace_id, field_mapping.custom_field_id
        )
        if existing is None:
            raise NotFoundError(f"Custom field not found: {field_mapping.custom_field_id}")

    async def _resolve_custom_field(
        self, workspace_id: str, field_mapping: FieldMapping
    ) -> FieldMapping:
        if field_mapping.custom_field_id or not field_mapping.custom_field_name:
            return field_mapping

        created = await self._repository.create_custom_field(
            workspace_id,
            field_mapping.custom_field_name,
            field_type=field_mapping.custom_field_type or "number",
            source=CUSTOM_FIELD_SOURCE,
            source_property=field_mapping.crm_property,
        )
        return field_mapping.model_copy(update={"custom_field_id": created.id})

    async def disconnect(self, integration: IntegrationRead) -> None:
        """Remove the integration along with its schema cache and card links."""
        await self._repository.delete_integration(integration.id)
        if self._token_manager is not None:
            self._token_manager.forget(integration.id)
        logger.info(
            "integration.disconnected",
            integration_id=integration.id,
            workspace_id=integration.workspace_id,
        )
