"""WooCommerce REST API v3 client.

Implements RemotePlatformClient for customers, products and orders.
Authentication uses the consumer key/secret via HTTP Basic Auth.

Every request is wrapped in bounded retry with exponential backoff
(``base_delay * 2 ** attempt``); 429 responses honour Retry-After.
This retry is independent of the circuit breaker, which only gates
higher-level recovery.

API Reference: https://woocommerce.github.io/woocommerce-rest-api-docs/
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from src.clients.base import RemotePlatformClient
from src.db.models import EntityType

logger = logging.getLogger(__name__)

ENTITY_ENDPOINTS: dict[EntityType, str] = {
    EntityType.customer: "customers",
    EntityType.product: "products",
    EntityType.order: "orders",
}

# HTTP statuses retried inside the client
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

ResponseHook = Callable[[str, float, int | None], None]


class RemoteAPIError(Exception):
    """Raised when the remote API returns an error or cannot be reached.

    Attributes:
        status_code: HTTP status, or None for transport failures.
        retry_after: Seconds the server asked us to wait (429 only).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RemoteAuthError(RemoteAPIError):
    """Raised when the remote API rejects the credentials (401/403)."""

    pass


class RemoteTimeoutError(RemoteAPIError):
    """Raised when a request exceeds the configured timeout."""

    pass


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given as seconds or an HTTP date.

    Args:
        value: Header value.
        now: Reference time for HTTP-date values (defaults to current UTC).

    Returns:
        Seconds to wait (never negative), or None if absent/unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (retry_at - now).total_seconds())


class WooCommerceClient(RemotePlatformClient):
    """WooCommerce platform client using REST API v3.

    Example usage:
        client = WooCommerceClient(
            site_url="https://mystore.com",
            consumer_key="ck_...",
            consumer_secret="cs_...",
        )
        customers = await client.list_records(EntityType.customer, page=1, per_page=100)
    """

    # WooCommerce REST API v3 base path
    API_VERSION = "wc/v3"

    def __init__(
        self,
        site_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_response: ResponseHook | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            site_url: Store URL (trailing slash removed).
            consumer_key: REST API consumer key.
            consumer_secret: REST API consumer secret.
            timeout: Per-request timeout in seconds.
            max_retries: Retries after the first attempt for transient failures.
            base_delay: Base delay in seconds (doubles each retry).
            transport: Optional httpx transport (tests inject MockTransport).
            sleep: Awaitable sleep used between retries.
            on_response: Hook called with (endpoint, duration_ms, status_code)
                after every attempt, for API metrics.
        """
        self._site_url = site_url.rstrip("/")
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._timeout = timeout
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._transport = transport
        self._sleep = sleep
        self._on_response = on_response
        self._client: httpx.AsyncClient | None = None
        self._retry_attempts_total = 0

    @property
    def platform_name(self) -> str:
        """Return the platform identifier."""
        return "woocommerce"

    @property
    def retry_attempts_total(self) -> int:
        """Total number of retry sleeps performed by this client."""
        return self._retry_attempts_total

    async def __aenter__(self) -> "WooCommerceClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=(self._consumer_key, self._consumer_secret),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def test_connection(self) -> bool:
        """Test that the credentials are accepted.

        Returns:
            True if the system_status endpoint responds, False otherwise.
        """
        try:
            await self._make_request(method="GET", endpoint="system_status")
            return True
        except RemoteAPIError as e:
            logger.warning("WooCommerce connection test failed: %s", e)
            return False

    async def list_records(
        self, entity_type: EntityType, page: int, per_page: int
    ) -> list[dict[str, Any]]:
        """Fetch one page of customers, products or orders.

        Args:
            entity_type: Collection to page through.
            page: 1-based page number.
            per_page: Page size (WooCommerce caps this at 100).

        Returns:
            List of raw records.
        """
        endpoint = ENTITY_ENDPOINTS[EntityType(entity_type)]
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if entity_type == EntityType.customer:
            params["role"] = "all"
        response = await self._make_request(
            method="GET", endpoint=endpoint, params=params
        )
        logger.debug(
            "Fetched %d %s from WooCommerce (page %d)", len(response), endpoint, page
        )
        return response

    async def get_record(
        self, entity_type: EntityType, remote_id: str
    ) -> dict[str, Any] | None:
        """Get a single record by id.

        Returns:
            The record, or None if WooCommerce answers 404.
        """
        endpoint = ENTITY_ENDPOINTS[EntityType(entity_type)]
        try:
            return await self._make_request(
                method="GET", endpoint=f"{endpoint}/{remote_id}"
            )
        except RemoteAPIError as e:
            if e.status_code == 404:
                return None
            raise

    async def update_record(
        self, entity_type: EntityType, remote_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a remote record with a partial payload.

        Args:
            entity_type: Collection the record belongs to.
            remote_id: WooCommerce id.
            data: Fields to write.

        Returns:
            The updated record as returned by WooCommerce.
        """
        endpoint = ENTITY_ENDPOINTS[EntityType(entity_type)]
        result = await self._make_request(
            method="PUT", endpoint=f"{endpoint}/{remote_id}", json=data
        )
        logger.info("Updated WooCommerce %s %s", endpoint, remote_id)
        return result

    def _record_response(self, endpoint: str, started: float, status: int | None) -> None:
        if self._on_response is None:
            return
        duration_ms = (time.monotonic() - started) * 1000
        try:
            self._on_response(endpoint, duration_ms, status)
        except Exception as e:
            logger.error("Response hook failed for %s: %s", endpoint, e)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request with bounded retry.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint (e.g., 'orders', 'orders/123')
            params: Query parameters
            json: JSON body data

        Returns:
            Parsed JSON response

        Raises:
            RemoteAuthError: On 401/403 (never retried).
            RemoteTimeoutError: If every attempt timed out.
            RemoteAPIError: On other errors, after retries for transient ones.
        """
        url = f"{self._site_url}/wp-json/{self.API_VERSION}/{endpoint}"
        client = self._get_client()
        retries = self._max_retries

        for attempt in range(retries + 1):
            started = time.monotonic()
            error: RemoteAPIError
            try:
                response = await client.request(
                    method=method, url=url, params=params, json=json
                )
                self._record_response(endpoint, started, response.status_code)
                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                message = f"{status} {e.response.reason_phrase} for {method} {endpoint}"
                if status in (401, 403):
                    raise RemoteAuthError(message, status_code=status) from e
                retry_after = None
                if status == 429:
                    retry_after = parse_retry_after(e.response.headers.get("Retry-After"))
                error = RemoteAPIError(message, status_code=status, retry_after=retry_after)
                if status not in RETRYABLE_STATUS_CODES:
                    raise error from e

            except httpx.TimeoutException as e:
                self._record_response(endpoint, started, None)
                error = RemoteTimeoutError(f"Request timed out: {method} {endpoint}: {e}")

            except httpx.RequestError as e:
                self._record_response(endpoint, started, None)
                error = RemoteAPIError(f"Request failed: network error: {e}")

            if attempt >= retries:
                raise error

            delay = error.retry_after
            if delay is None:
                delay = self._base_delay * (2 ** attempt)
            logger.warning(
                "WooCommerce %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                method, endpoint, attempt + 1, retries + 1, delay, error,
            )
            self._retry_attempts_total += 1
            await self._sleep(delay)

        raise RemoteAPIError(f"Retries exhausted for {method} {endpoint}")
