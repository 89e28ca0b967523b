"""Tests for the WooCommerce REST client against an in-memory store."""

from datetime import UTC, datetime

import httpx
import pytest

from src.clients.woocommerce import (
    RemoteAPIError,
    RemoteAuthError,
    RemoteTimeoutError,
    WooCommerceClient,
    parse_retry_after,
)
from src.db.models import EntityType
from tests.helpers import RecordingSleep, make_customer, make_product

SITE_URL = "https://shop.example.com"


def _client(transport: httpx.AsyncBaseTransport, **kwargs) -> WooCommerceClient:
    return WooCommerceClient(
        site_url=SITE_URL + "/",
        consumer_key="ck_test",
        consumer_secret="cs_test",
        transport=transport,
        **kwargs,
    )


class TestParseRetryAfter:
    """Retry-After accepts delta-seconds and HTTP dates."""

    def test_seconds(self):
        assert parse_retry_after("2") == 2.0

    def test_negative_seconds_clamped(self):
        assert parse_retry_after("-5") == 0.0

    def test_http_date(self):
        now = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 15 Jan 2026 12:00:30 GMT", now=now) == 30.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None


class TestReads:
    """Listing and single-record reads."""

    @pytest.mark.asyncio
    async def test_list_records_pages(self, woo_store, woo_client):
        for i in range(1, 4):
            woo_store.add("customers", make_customer(i, f"c{i}@x.com"))

        first = await woo_client.list_records(EntityType.customer, page=1, per_page=2)
        second = await woo_client.list_records(EntityType.customer, page=2, per_page=2)

        assert [r["id"] for r in first] == [1, 2]
        assert [r["id"] for r in second] == [3]

    @pytest.mark.asyncio
    async def test_customer_listing_requests_all_roles(self, woo_store, woo_client):
        await woo_client.list_records(EntityType.customer, page=1, per_page=10)
        request = woo_store.requests[-1]
        assert request.url.path == "/wp-json/wc/v3/customers"
        assert request.url.params["role"] == "all"

    @pytest.mark.asyncio
    async def test_requests_use_basic_auth(self, woo_store, woo_client):
        await woo_client.list_records(EntityType.product, page=1, per_page=10)
        assert woo_store.requests[-1].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_get_record(self, woo_store, woo_client):
        woo_store.add("products", make_product(7, "W-7"))
        record = await woo_client.get_record(EntityType.product, "7")
        assert record["sku"] == "W-7"

    @pytest.mark.asyncio
    async def test_get_record_missing_returns_none(self, woo_client):
        assert await woo_client.get_record(EntityType.order, "999") is None


class TestWrites:

    @pytest.mark.asyncio
    async def test_update_record_sends_put(self, woo_store, woo_client):
        woo_store.add("products", make_product(7, "W-7"))

        result = await woo_client.update_record(
            EntityType.product, "7", {"stock_quantity": 9}
        )

        assert result["stock_quantity"] == 9
        assert woo_store.updates == [("products", "7", {"stock_quantity": 9})]


class TestErrors:
    """Error mapping and bounded retry."""

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, woo_store, sleep):
        woo_store.fail_next = [401, 401]
        client = _client(woo_store.transport(), max_retries=3, sleep=sleep)
        try:
            with pytest.raises(RemoteAuthError) as exc_info:
                await client.list_records(EntityType.order, page=1, per_page=10)
        finally:
            await client.close()
        assert exc_info.value.status_code == 401
        assert len(woo_store.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, woo_store, sleep):
        woo_store.fail_next = [429]
        woo_store.add("customers", make_customer(1, "a@x.com"))
        client = _client(woo_store.transport(), max_retries=2, sleep=sleep)
        try:
            records = await client.list_records(EntityType.customer, page=1, per_page=10)
        finally:
            await client.close()
        assert [r["id"] for r in records] == [1]
        assert sleep.delays == [2.0]
        assert client.retry_attempts_total == 1

    @pytest.mark.asyncio
    async def test_server_errors_back_off_exponentially(self, woo_store, sleep):
        woo_store.fail_next = [503, 502, 500]
        client = _client(woo_store.transport(), max_retries=2, base_delay=1.0, sleep=sleep)
        try:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.list_records(EntityType.product, page=1, per_page=10)
        finally:
            await client.close()
        assert exc_info.value.status_code == 500
        assert sleep.delays == [1.0, 2.0]
        assert len(woo_store.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, woo_store, sleep):
        woo_store.fail_next = [400]
        client = _client(woo_store.transport(), max_retries=3, sleep=sleep)
        try:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.list_records(EntityType.product, page=1, per_page=10)
        finally:
            await client.close()
        assert exc_info.value.status_code == 400
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_timeout_raises_remote_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        sleep = RecordingSleep()
        client = _client(httpx.MockTransport(handler), max_retries=1, sleep=sleep)
        try:
            with pytest.raises(RemoteTimeoutError):
                await client.get_record(EntityType.order, "1")
        finally:
            await client.close()
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_response_hook_sees_every_attempt(self, woo_store, sleep):
        seen = []
        woo_store.fail_next = [503]
        client = _client(
            woo_store.transport(),
            max_retries=1,
            sleep=sleep,
            on_response=lambda endpoint, ms, status: seen.append((endpoint, status)),
        )
        try:
            await client.list_records(EntityType.order, page=1, per_page=10)
        finally:
            await client.close()
        assert seen == [("orders", 503), ("orders", 200)]


class TestConnection:

    @pytest.mark.asyncio
    async def test_connection_ok(self, woo_client):
        assert await woo_client.test_connection() is True

    @pytest.mark.asyncio
    async def test_connection_rejected(self, woo_store, woo_client):
        woo_store.fail_next = [500]
        assert await woo_client.test_connection() is False

    @pytest.mark.asyncio
    async def test_connection_auth_rejected(self, woo_store, woo_client):
        """RemoteAuthError is a RemoteAPIError, so it reports False."""
        woo_store.fail_next = [401]
        assert await woo_client.test_connection() is False
