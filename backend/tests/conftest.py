"""
Pytest Configuration and Shared Fixtures

This module provides common fixtures and configuration for all tests.
"""

import fnmatch
import json
import os
from typing import Optional

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

os.environ.setdefault("ENVIRONMENT", "test")

# Add backend directory to path for imports
import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))


# =============================================================================
# FAKE REDIS
# =============================================================================


class FakeRedis:
    """
    In-memory stand-in for redis.asyncio.Redis (decode_responses=True).

    Implements only the commands the durable cache uses and records the
    expiry passed to every SET.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.set_calls: list[tuple[str, Optional[int]]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        self.set_calls.append((key, ex))
        return True

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.store)

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        return True

    async def aclose(self):
        return None

    def seed(self, key: str, value, ex: Optional[int] = None) -> None:
        """Store a JSON value without recording a SET call"""
        self.store[key] = json.dumps(value)
        self.ttls[key] = ex

    def value(self, key: str):
        raw = self.store.get(key)
        return None if raw is None else json.loads(raw)


class FailingRedis:
    """Redis client whose every command fails as if the server were down"""

    def __init__(self):
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._fail()

    async def set(self, key, value, ex=None):
        self._fail()

    async def exists(self, *keys):
        self._fail()

    async def scan_iter(self, match=None):
        self._fail()
        yield  # pragma: no cover

    async def ping(self):
        self._fail()

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    """Working in-memory Redis"""
    return FakeRedis()


@pytest.fixture
def failing_redis():
    """Redis that raises on every command"""
    return FailingRedis()


# =============================================================================
# CLOCKS
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorded_sleeps():
    """Async sleep replacement that records delays instead of waiting"""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================


def make_pricelist_record(
    gln: str = "5790000610877",
    charge_owner: str = "Radius Elnet A/S",
    prices: Optional[list] = None,
    valid_from: Optional[str] = "2024-01-01T00:00:00",
    valid_to: Optional[str] = None,
    **extra,
) -> dict:
    """Upstream DatahubPricelist record with Price1..Price24"""
    if prices is None:
        prices = [0.1] * 6 + [0.3] * 11 + [0.8] * 4 + [0.3] * 3
    record = {
        "GLN_Number": gln,
        "ChargeOwner": charge_owner,
        "GridArea": "DK2",
        "ChargeType": "D03",
        "ChargeTypeCode": "DT_C_01",
        "Description": "Nettarif C time",
        "ValidFrom": valid_from,
        "ValidTo": valid_to,
        "ResolutionDuration": "PT1H",
    }
    for hour, price in enumerate(prices, start=1):
        record[f"Price{hour}"] = price
    record.update(extra)
    return record


@pytest.fixture
def make_record():
    """Factory for upstream price list records"""
    return make_pricelist_record


@pytest.fixture
def tariff_record():
    """Time-of-use grid tariff in force since 2024-01-01"""
    return make_pricelist_record()


@pytest.fixture
def spot_price_records():
    """Two hours of Elspotprices for DK2"""
    return [
        {
            "HourUTC": "2024-01-15T00:00:00",
            "HourDK": "2024-01-15T01:00:00",
            "PriceArea": "DK2",
            "SpotPriceDKK": 500.0,
            "SpotPriceEUR": 67.0,
        },
        {
            "HourUTC": "2024-01-15T01:00:00",
            "HourDK": "2024-01-15T02:00:00",
            "PriceArea": "DK2",
            "SpotPriceDKK": 1000.0,
            "SpotPriceEUR": 134.0,
        },
    ]


# =============================================================================
# UPSTREAM FIXTURES
# =============================================================================


class UpstreamStub:
    """
    Scripted Energi Data Service behind an httpx.MockTransport.

    Each queued reply is a (status_code, body) pair; the last one repeats
    once the queue runs dry. Every request is kept for assertions.
    """

    def __init__(self):
        self.replies: list[tuple[int, object]] = [(200, {"records": []})]
        self.requests: list[httpx.Request] = []

    def reply(self, *replies: tuple[int, object]) -> "UpstreamStub":
        self.replies = list(replies)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.replies[0] if len(self.replies) == 1 else self.replies.pop(0)
        if isinstance(body, Exception):
            raise body
        if isinstance(body, (dict, list)):
            return httpx.Response(status_code, json=body)
        return httpx.Response(status_code, text=body or "")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def eds_client(upstream):
    """EnergiDataServiceClient wired to the upstream stub"""
    from integrations.energidata import EnergiDataServiceClient

    return EnergiDataServiceClient(
        base_url="https://api.test/dataset",
        timeout=1.0,
        transport=upstream.transport,
    )


@pytest.fixture
def build_services(upstream):
    """Factory for PricingServices on top of the upstream stub and a Redis double"""
    from config.settings import settings
    from integrations.energidata import create_services_from_settings

    def _build(redis_client=None, **overrides):
        test_settings = settings.model_copy(
            update={
                "energidata_base_url": "https://api.test/dataset",
                "upstream_retry_base_delay_seconds": 0.0,
                "upstream_request_budget_seconds": None,
                **overrides,
            }
        )
        return create_services_from_settings(
            test_settings, redis_client=redis_client, transport=upstream.transport
        )

    return _build
