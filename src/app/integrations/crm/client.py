"""Async HTTP client for the HubSpot REST API.

Every outbound HubSpot call goes through HubSpotClient.request(). A 429
response is retried with tenacity (up to 3 retries, exponential backoff
1s / 2s / 4s); any other non-2xx response fails immediately with the status
and body attached. Transport failures surface as CRMConnectionError.

The sleep function and httpx transport are injectable so tests can run the
retry schedule without waiting and without a network.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.app.core.monitoring import crm_requests_total, crm_retries_total
from src.app.integrations.errors import CRMAPIError, CRMConnectionError, CRMRateLimitError

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.hubapi.com"
MAX_RETRIES = 3


def backoff_delay(retry_index: int) -> int:
    """Seconds to wait before retry ``retry_index`` (0-based): 1, 2, 4."""
    return 2**retry_index


def _retry_logger(method: str, path: str) -> Callable[[RetryCallState], None]:
    def log_retry(retry_state: RetryCallState) -> None:
        crm_retries_total.inc()
        logger.warning(
            "crm.request_retry",
            method=method,
            path=path,
            attempt=retry_state.attempt_number,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    return log_retry


class HubSpotClient:
    """Authenticated HubSpot API client bound to one access token.

    Args:
        access_token: Bearer token (OAuth access token or private app token).
        base_url: API root, overridable for tests.
        transport: Optional httpx transport (httpx.MockTransport in tests).
        sleep: Awaitable sleep used between retries.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._sleep = sleep
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one attempt."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def request(
        self,
        path: str,
        method: str = "GET",
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            CRMRateLimitError: 429 on the initial attempt and all retries.
            CRMAPIError: Any other non-2xx status (not retried).
            CRMConnectionError: The request never got a response.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_RETRIES + 1),
            wait=wait_exponential(multiplier=1, min=backoff_delay(0), max=backoff_delay(MAX_RETRIES - 1)),
            retry=retry_if_exception_type(CRMRateLimitError),
            before_sleep=_retry_logger(method, path),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, path, json=json, params=params)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            crm_requests_total.labels(method=method, status="error").inc()
            logger.error("crm.request_failed", method=method, path=path, error=str(exc))
            raise CRMConnectionError(f"HubSpot request failed: {exc}") from exc

        crm_requests_total.labels(method=method, status=str(response.status_code)).inc()

        if response.status_code == 429:
            raise CRMRateLimitError("HubSpot rate limit exceeded")

        if response.is_error:
            logger.warning(
                "crm.request_error",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise CRMAPIError(response.status_code, response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "crm.invalid_body",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise CRMAPIError(response.status_code, "invalid JSON body") from exc


ClientFactory = Callable[[str], HubSpotClient]
"""Builds a HubSpotClient for an access token."""


def default_client_factory(
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ClientFactory:
    """Client factory bound to the configured base URL and timeout."""

    def factory(access_token: str) -> HubSpotClient:
        return HubSpotClient(
            access_token,
            base_url=base_url,
            transport=transport,
            timeout=timeout,
        )

    return factory
