"""
Tests for the outbound HTTP helpers: fetch_with_timeout and retry_with_backoff
"""

import asyncio

import httpx
import pytest

from integrations.energidata.base import (
    APIError,
    RetryPolicy,
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamConnectionError,
    UpstreamTimeoutError,
    is_transient,
)
from integrations.energidata.http import fetch_with_timeout, retry_with_backoff


class FlakyOperation:
    """Async callable failing a given number of times before succeeding"""

    def __init__(self, failures: int, error: Exception = None, result="ok"):
        self.failures = failures
        self.error = error or TransientUpstreamError("upstream 503", status_code=503)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


# =============================================================================
# RETRY POLICY
# =============================================================================


class TestRetryPolicy:
    """Delay schedule"""

    def test_first_attempt_has_no_delay(self):
        assert RetryPolicy().get_delay(1) == 0.0

    def test_delays_double_from_base(self):
        policy = RetryPolicy(base_delay=1.0)
        assert [policy.get_delay(n) for n in (2, 3, 4)] == [1.0, 2.0, 4.0]

    def test_jitter_stays_within_fraction(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(50):
            assert 0.5 <= policy.get_delay(2) <= 1.5

    def test_is_transient_excludes_client_errors(self):
        assert is_transient(TransientUpstreamError("503"))
        assert is_transient(ValueError("bad"))
        assert not is_transient(UpstreamClientError("400", status_code=400))


# =============================================================================
# RETRY WITH BACKOFF
# =============================================================================


class TestRetryWithBackoff:
    """Bounded retries with exponential delay"""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, recorded_sleeps):
        operation = FlakyOperation(failures=0)

        result = await retry_with_backoff(operation, sleep=recorded_sleeps)

        assert result == "ok"
        assert operation.calls == 1
        assert recorded_sleeps.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_two_failures(self, recorded_sleeps):
        operation = FlakyOperation(failures=2)

        result = await retry_with_backoff(operation, 3, 1.0, sleep=recorded_sleeps)

        assert result == "ok"
        assert operation.calls == 3
        assert recorded_sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self, recorded_sleeps):
        error = UpstreamTimeoutError()
        operation = FlakyOperation(failures=10, error=error)

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await retry_with_backoff(operation, 3, 1.0, sleep=recorded_sleeps)

        assert exc_info.value is error
        assert operation.calls == 3
        assert recorded_sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self, recorded_sleeps):
        operation = FlakyOperation(failures=1)

        with pytest.raises(TransientUpstreamError):
            await retry_with_backoff(operation, 1, 1.0, sleep=recorded_sleeps)

        assert operation.calls == 1
        assert recorded_sleeps.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self, recorded_sleeps):
        operation = FlakyOperation(failures=5, error=UpstreamClientError("bad filter", status_code=400))

        with pytest.raises(UpstreamClientError):
            await retry_with_backoff(
                operation, 3, 1.0, should_retry=is_transient, sleep=recorded_sleeps
            )

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_retries_any_error_by_default(self, recorded_sleeps):
        operation = FlakyOperation(failures=1, error=UpstreamClientError("bad", status_code=400))

        assert await retry_with_backoff(operation, 3, 1.0, sleep=recorded_sleeps) == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_deadline_cuts_retries_short(self, recorded_sleeps, clock):
        operation = FlakyOperation(failures=10)

        with pytest.raises(TransientUpstreamError):
            await retry_with_backoff(
                operation,
                3,
                1.0,
                deadline=clock() + 1.5,
                sleep=recorded_sleeps,
                clock=clock,
            )

        # The 1 s delay fits the budget, the 2 s one does not
        assert operation.calls == 2
        assert recorded_sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            await retry_with_backoff(FlakyOperation(failures=0), 0)


# =============================================================================
# FETCH WITH TIMEOUT
# =============================================================================


class TestFetchWithTimeout:
    """Single request with a hard deadline"""

    @pytest.mark.asyncio
    async def test_returns_response_unchanged(self):
        def handler(request):
            assert request.url.params["limit"] == "5"
            return httpx.Response(503, json={"error": "busy"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await fetch_with_timeout(client, "https://api.test/x", params={"limit": "5"})

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_slow_response_times_out(self):
        async def handler(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamTimeoutError) as exc_info:
                await fetch_with_timeout(client, "https://api.test/x", timeout=0.05, api_name="test")

        assert exc_info.value.api_name == "test"

    @pytest.mark.asyncio
    async def test_httpx_timeout_maps_to_timeout_error(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamTimeoutError):
                await fetch_with_timeout(client, "https://api.test/x")

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamConnectionError) as exc_info:
                await fetch_with_timeout(client, "https://api.test/x")

        assert isinstance(exc_info.value, TransientUpstreamError)
        assert "connection refused" in str(exc_info.value)


class TestAPIError:
    def test_str_includes_api_name_and_status(self):
        error = APIError("boom", status_code=502, api_name="energidataservice")
        assert str(error) == "[energidataservice] boom (HTTP 502)"
