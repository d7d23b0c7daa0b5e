"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the integration error handler, lifespan wiring of the CRM services onto
app.state, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.config import Environment, Settings, get_settings
from src.app.core.database import close_db, get_session_factory, init_db
from src.app.core.encryption import CredentialVault
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.rate_limit import WorkspaceRateLimiter
from src.app.integrations.crm import (
    DealSearchEngine,
    EnrichmentService,
    HubSpotOAuth,
    MappingSuggester,
    SchemaDiscoveryService,
    TokenManager,
    default_client_factory,
)
from src.app.integrations.errors import IntegrationError
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.service import IntegrationService
from src.app.services.llm import LLMService

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Internal server error"


def build_integration_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    llm_service: LLMService | None = None,
) -> dict[str, Any]:
    """Construct the CRM service graph. Keys are the app.state attribute names.

    Raises:
        ConfigurationError: ENCRYPTION_KEY is not set.
    """
    vault = CredentialVault(settings.ENCRYPTION_KEY)
    repository = IntegrationRepository(
        session_factory=session_factory or get_session_factory()
    )
    oauth = HubSpotOAuth(
        client_id=settings.HUBSPOT_CLIENT_ID,
        client_secret=settings.HUBSPOT_CLIENT_SECRET,
        redirect_uri=settings.HUBSPOT_REDIRECT_URI,
        token_url=f"{settings.HUBSPOT_API_BASE.rstrip('/')}/oauth/v1/token",
        transport=transport,
        timeout=settings.HUBSPOT_TIMEOUT,
    )
    client_factory = default_client_factory(
        base_url=settings.HUBSPOT_API_BASE,
        timeout=settings.HUBSPOT_TIMEOUT,
        transport=transport,
    )
    token_manager = TokenManager(repository=repository, vault=vault, oauth=oauth)
    deal_search = DealSearchEngine(token_manager, client_factory)

    return {
        "vault": vault,
        "hubspot_oauth": oauth,
        "integration_repository": repository,
        "integration_service": IntegrationService(
            repository, vault, oauth, client_factory, token_manager=token_manager
        ),
        "token_manager": token_manager,
        "schema_discovery": SchemaDiscoveryService(token_manager, client_factory),
        "deal_search": deal_search,
        "enrichment_service": EnrichmentService(repository, deal_search),
        "mapping_suggester": MappingSuggester(llm_service or LLMService()),
        "enrich_rate_limiter": WorkspaceRateLimiter(
            limit=settings.ENRICH_RATE_LIMIT,
            storage_uri=settings.RATE_LIMIT_STORAGE_URI,
        ),
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and CRM services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # A missing vault secret is fatal: the app refuses to start
    for name, service in build_integration_services(settings).items():
        setattr(app.state, name, service)
    logger.info(
        "integrations.initialized",
        hubspot_oauth=settings.hubspot_oauth_configured,
        enrich_rate_limit=settings.ENRICH_RATE_LIMIT,
    )

    yield

    await close_db()


# ── Exception Handlers ───────────────────────────────────────────────────────


async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    """Render IntegrationError as {"error", "code"} with its HTTP status."""
    settings = get_settings()
    log_method = logger.error if exc.status_code >= 500 else logger.warning
    log_method(
        "integration_error",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )

    message = exc.message
    if settings.ENVIRONMENT == Environment.production and not exc.expose:
        message = GENERIC_ERROR_MESSAGE
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message, "code": exc.code},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; hides exception details in production."""
    settings = get_settings()
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    message = GENERIC_ERROR_MESSAGE
    if settings.ENVIRONMENT != Environment.production:
        message = str(exc) or exc.__class__.__name__
    return JSONResponse(
        status_code=500,
        content={"error": message, "code": "internal_error"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Roadway CRM Integrations API",
        version="0.1.0",
        description="HubSpot connection, schema discovery, field mapping and card enrichment",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(IntegrationError, integration_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Include v1 API router (health, integrations, cards)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
