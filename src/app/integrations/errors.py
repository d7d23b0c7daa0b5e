"""Exception taxonomy for the CRM integration layer.

Every error carries an HTTP status, a stable machine-readable code, and an
``expose`` flag. Exposed errors keep their message in production; the rest
are replaced with a generic message by the API exception handler.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all integration failures."""

    status_code: int = 500
    code: str = "integration_error"
    expose: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(IntegrationError):
    """A workspace-scoped resource does not exist."""

    status_code = 404
    code = "not_found"
    expose = True


# -- Configuration ------------------------------------------------------------


class ConfigurationError(IntegrationError):
    """Missing secret, unconfigured OAuth app, unavailable AI provider. Never retried."""

    status_code = 500
    code = "configuration_error"
    expose = True


class MappingNotConfiguredError(ConfigurationError):
    """Enrichment was requested before any field mappings were saved."""

    status_code = 400
    code = "mapping_not_configured"


class SchemaNotDiscoveredError(ConfigurationError):
    """Mapping suggestions were requested before schema discovery ran."""

    status_code = 400
    code = "schema_not_discovered"


# -- Authorization ------------------------------------------------------------


class AuthorizationError(IntegrationError):
    """Rejected before any integration row is mutated."""

    status_code = 400
    code = "authorization_error"
    expose = True


class InvalidStateError(AuthorizationError):
    code = "invalid_state"


class TokenExchangeError(AuthorizationError):
    code = "token_exchange_failed"


class InvalidCredentialError(AuthorizationError):
    code = "invalid_credential"


# -- Remote CRM ---------------------------------------------------------------


class CRMError(IntegrationError):
    """A call to the CRM failed."""

    status_code = 502
    code = "crm_error"


class CRMAPIError(CRMError):
    """Non-2xx response other than 429. Not retried.

    Attributes:
        status: HTTP status returned by the CRM.
        body: Raw response body, captured for diagnostics.
    """

    code = "crm_api_error"

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"HubSpot API error {status}: {body}")


class CRMRateLimitError(CRMError):
    """The CRM kept answering 429 after every retry was spent."""

    status_code = 429
    code = "crm_rate_limited"
    expose = True


class CRMConnectionError(CRMError):
    """The CRM could not be reached at all."""

    code = "crm_unreachable"


# -- Token lifecycle ----------------------------------------------------------


class TokenRefreshError(IntegrationError):
    """Refresh-token exchange failed; the operator has to reconnect."""

    status_code = 401
    code = "token_refresh_failed"
    expose = True


class ReconnectRequiredError(TokenRefreshError):
    """The integration is in error state from an earlier refresh failure."""

    code = "reconnect_required"


# -- AI suggestions -----------------------------------------------------------


class MappingSuggestionError(IntegrationError):
    """The AI returned something that is not a valid mapping suggestion."""

    status_code = 502
    code = "mapping_suggestion_invalid"
    expose = True
