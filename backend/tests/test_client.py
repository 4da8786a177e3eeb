"""
Tests for EnergiDataServiceClient and the upstream rate limiter
"""

import json

import httpx
import pytest

from integrations.energidata.base import (
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamConnectionError,
    UpstreamPayloadError,
    UpstreamRateLimitedError,
)
from integrations.energidata.client import EnergiDataServiceClient
from integrations.energidata.rate_limiter import SlidingWindowLimiter


# =============================================================================
# REQUESTS
# =============================================================================


class TestRequestShape:
    """URL, query string and headers sent upstream"""

    @pytest.mark.asyncio
    async def test_pricelist_query(self, eds_client, upstream, tariff_record):
        upstream.reply((200, {"records": [tariff_record]}))

        records = await eds_client.fetch_datahub_pricelist(
            filter={"ChargeType": "D03", "GLN_Number": "5790000610877"},
        )

        request = upstream.requests[0]
        assert request.url.path == "/dataset/DatahubPricelist"
        assert json.loads(request.url.params["filter"]) == {
            "ChargeType": "D03",
            "GLN_Number": "5790000610877",
        }
        assert request.url.params["sort"] == "ValidFrom desc"
        assert request.url.params["limit"] == "10"
        assert request.headers["User-Agent"] == "DinElPortal/1.0"
        assert records == [tariff_record]

    @pytest.mark.asyncio
    async def test_spot_price_query(self, eds_client, upstream, spot_price_records):
        upstream.reply((200, {"records": spot_price_records, "total": 2}))

        payload = await eds_client.fetch_spot_prices("DK1", "2024-01-15", "2024-01-16")

        params = upstream.requests[0].url.params
        assert upstream.requests[0].url.path == "/dataset/Elspotprices"
        assert params["start"] == "2024-01-15"
        assert params["end"] == "2024-01-16"
        assert json.loads(params["filter"]) == {"PriceArea": ["DK1"]}
        assert params["sort"] == "HourUTC ASC"
        assert payload["total"] == 2

    def test_build_params_skips_unset(self):
        assert EnergiDataServiceClient.build_params(limit=5) == {"limit": "5"}


# =============================================================================
# STATUS MAPPING
# =============================================================================


class TestStatusMapping:
    """HTTP status to error taxonomy"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_missing_data_is_empty_when_allowed(self, eds_client, upstream, status_code):
        upstream.reply((status_code, {"error": "unknown filter"}))

        records = await eds_client.fetch_datahub_pricelist(empty_on_missing=True)

        assert records == []

    @pytest.mark.asyncio
    async def test_client_error_when_empty_not_allowed(self, eds_client, upstream):
        upstream.reply((400, {"error": "bad filter"}))

        with pytest.raises(UpstreamClientError) as exc_info:
            await eds_client.fetch_datahub_pricelist()

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_other_4xx_is_client_error(self, eds_client, upstream):
        upstream.reply((403, "forbidden"))

        with pytest.raises(UpstreamClientError):
            await eds_client.fetch_datahub_pricelist(empty_on_missing=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    async def test_server_errors_are_transient(self, eds_client, upstream, status_code):
        upstream.reply((status_code, "try later"))

        with pytest.raises(TransientUpstreamError) as exc_info:
            await eds_client.fetch_datahub_pricelist(empty_on_missing=True)

        assert exc_info.value.status_code == status_code
        assert exc_info.value.response_body == "try later"

    @pytest.mark.asyncio
    async def test_invalid_json_is_payload_error(self, eds_client, upstream):
        upstream.reply((200, "<html>maintenance</html>"))

        with pytest.raises(UpstreamPayloadError):
            await eds_client.fetch_datahub_pricelist()

    @pytest.mark.asyncio
    async def test_non_object_body_is_payload_error(self, eds_client, upstream):
        upstream.reply((200, [1, 2, 3]))

        with pytest.raises(UpstreamPayloadError):
            await eds_client.fetch_datahub_pricelist()

    @pytest.mark.asyncio
    async def test_missing_records_becomes_empty_list(self, eds_client, upstream):
        upstream.reply((200, {"total": 0}))

        assert await eds_client.fetch_datahub_pricelist() == []

    @pytest.mark.asyncio
    async def test_connection_failure(self, eds_client, upstream):
        upstream.reply((0, httpx.ConnectError("refused")))

        with pytest.raises(UpstreamConnectionError):
            await eds_client.fetch_datahub_pricelist()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, eds_client, upstream):
        await eds_client.fetch_datahub_pricelist()

        await eds_client.close()
        await eds_client.close()

        assert eds_client._client is None


# =============================================================================
# RATE LIMITING
# =============================================================================


class TestClientRateLimit:
    @pytest.mark.asyncio
    async def test_exhausted_limit_raises_without_request(self, upstream):
        limiter = SlidingWindowLimiter(requests_per_window=1, window_seconds=60, name="test")
        client = EnergiDataServiceClient(
            base_url="https://api.test/dataset",
            rate_limiter=limiter,
            rate_limit_wait=0.01,
            transport=upstream.transport,
        )

        await client.fetch_datahub_pricelist()
        with pytest.raises(UpstreamRateLimitedError):
            await client.fetch_datahub_pricelist()

        assert upstream.call_count == 1
        await client.close()


class TestSlidingWindowLimiter:
    """Window accounting with a fake clock"""

    @pytest.mark.asyncio
    async def test_admits_up_to_limit(self, clock):
        limiter = SlidingWindowLimiter(requests_per_window=3, window_seconds=10, clock=clock)

        assert [await limiter.acquire() for _ in range(4)] == [True, True, True, False]
        assert await limiter.get_remaining() == 0

    @pytest.mark.asyncio
    async def test_window_slides(self, clock):
        limiter = SlidingWindowLimiter(requests_per_window=2, window_seconds=10, clock=clock)
        await limiter.acquire()
        clock.advance(5)
        await limiter.acquire()

        clock.advance(5.001)

        assert await limiter.get_remaining() == 1
        assert await limiter.acquire() is True

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock):
        limiter = SlidingWindowLimiter(requests_per_window=1, window_seconds=10, clock=clock)

        assert await limiter.acquire("a") is True
        assert await limiter.acquire("b") is True
        assert await limiter.acquire("a") is False

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        limiter = SlidingWindowLimiter(requests_per_window=1, window_seconds=10, clock=clock)
        await limiter.acquire()

        await limiter.reset()

        assert await limiter.acquire() is True

    @pytest.mark.asyncio
    async def test_wait_for_token_times_out(self):
        limiter = SlidingWindowLimiter(requests_per_window=1, window_seconds=60)
        await limiter.acquire()

        assert await limiter.wait_for_token(timeout=0.05) is False

    def test_rejects_empty_window(self):
        with pytest.raises(ValueError):
            SlidingWindowLimiter(requests_per_window=0, window_seconds=1)
