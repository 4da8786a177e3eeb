"""
Resource Services

One service per public resource. Each owns its cache keys and TTLs, the
compute function that turns upstream records into the served payload, and
the empty payload used when nothing else is available.

Example usage:
    ```python
    services = create_services_from_settings(settings, redis_client)

    result = await services.tariffs.get_tariff("5790000610877")
    result.value          # tariff dict
    result.cache_status   # CacheStatus.MISS, HIT_KV, ...
    ```
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from .base import (
    RetryPolicy,
    TariffResult,
    is_transient,
    is_unparseable_timestamp,
    parse_timestamp,
    retry_always,
    to_float,
)
from .cache import DurableCache, MemoryCache
from .client import EnergiDataServiceClient
from .orchestrator import CacheOrchestrator, CacheResult, ShortLived
from .rate_limiter import SlidingWindowLimiter
from .tariffs import normalize_tariff

logger = structlog.get_logger(__name__)

# Residential grid tariff charge code used when the caller names none
DEFAULT_CHARGE_CODE = "DT_C_01"
TARIFF_CHARGE_TYPE = "D03"

# Danish fees in kr/kWh applied on top of the spot price
SYSTEM_FEE_KWH = 0.19
ELECTRICITY_TAX_KWH = 0.90
VAT_RATE = 1.25

# Region value meaning "the whole country"
ALL_REGIONS = "Danmark"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TariffService:
    """Grid tariffs per GLN and charge code"""

    resource = "tariffs"

    def __init__(
        self,
        client: EnergiDataServiceClient,
        orchestrator: CacheOrchestrator,
        cache_ttl: int = 24 * 60 * 60,
        fallback_ttl: int = 48 * 60 * 60,
        empty_ttl: int = 900,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.cache_ttl = cache_ttl
        self.fallback_ttl = fallback_ttl
        self.empty_ttl = empty_ttl
        self._now = now

    @staticmethod
    def cache_keys(gln: str, charge_code: Optional[str] = None) -> tuple[str, str]:
        """(primary, latest-good) keys"""
        return f"tariff:{gln}:{charge_code or 'default'}", f"tariff:{gln}"

    @staticmethod
    def fallback_payload(gln: Optional[str], status: str = "degraded") -> dict:
        payload = TariffResult.empty(gln).to_dict()
        payload["status"] = status
        return payload

    async def compute(self, gln: str, charge_code: Optional[str] = None) -> Any:
        records = await self.client.fetch_datahub_pricelist(
            filter={
                "ChargeType": TARIFF_CHARGE_TYPE,
                "GLN_Number": gln,
                "ChargeTypeCode": charge_code or DEFAULT_CHARGE_CODE,
            },
            sort="ValidFrom desc",
            limit=10,
            empty_on_missing=True,
        )

        tariff = normalize_tariff(gln, records, now=self._now())
        if tariff.is_empty:
            logger.info("tariff_not_found", gln=gln, charge_code=charge_code)
            # Short negative cache so an unknown GLN does not hammer upstream
            return ShortLived(tariff.to_dict(), self.empty_ttl)

        return tariff.to_dict()

    async def get_tariff(self, gln: str, charge_code: Optional[str] = None) -> CacheResult:
        primary_key, latest_key = self.cache_keys(gln, charge_code)

        return await self.orchestrator.get_or_compute(
            primary_key,
            latest_key,
            lambda: self.compute(gln, charge_code),
            primary_ttl=self.cache_ttl,
            latest_ttl=self.fallback_ttl,
            fallback=lambda: self.fallback_payload(gln),
            resource=self.resource,
        )


class PricelistService:
    """Provider price lists, optionally narrowed to one grid area"""

    resource = "pricelists"

    def __init__(
        self,
        client: EnergiDataServiceClient,
        orchestrator: CacheOrchestrator,
        cache_ttl: int = 3600,
        fallback_ttl: int = 7200,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.cache_ttl = cache_ttl
        self.fallback_ttl = fallback_ttl
        self._now = now

    @staticmethod
    def cache_keys(region: Optional[str] = None) -> tuple[str, str]:
        scope = region or "all"
        return f"pricelists:{scope}", f"pricelists:latest:{scope}"

    def fallback_payload(self, region: Optional[str], status: str = "degraded") -> dict:
        messages = {
            "degraded": "Price list data temporarily unavailable",
            "error": "An unexpected error occurred",
        }
        return {
            "providers": [],
            "metadata": {
                "region": region or "all",
                "timestamp": self._now().isoformat(),
                "providerCount": 0,
                "status": status,
                "message": messages.get(status, messages["degraded"]),
            },
        }

    def build_payload(self, records: list[dict], region: Optional[str]) -> dict:
        """Keep records in force now and reshape them for the site"""
        now = self._now()
        providers = []

        for record in records:
            valid_from = parse_timestamp(record.get("ValidFrom"))
            valid_to = parse_timestamp(record.get("ValidTo"))
            if valid_from is None or valid_from > now:
                continue
            if is_unparseable_timestamp(record.get("ValidTo")):
                continue
            if valid_to is not None and valid_to < now:
                continue

            providers.append({
                "gln": record.get("GLN_Number"),
                "companyName": record.get("ChargeOwner"),
                "gridArea": record.get("GridArea"),
                "priceType": record.get("ChargeType"),
                "description": record.get("Description"),
                "price": to_float(record.get("Price1")),
                "validFrom": record.get("ValidFrom"),
                "validTo": record.get("ValidTo"),
                "resolution": record.get("ResolutionDuration"),
            })

        return {
            "providers": providers,
            "metadata": {
                "region": region or "all",
                "timestamp": now.isoformat(),
                "providerCount": len({p["gln"] for p in providers}),
            },
        }

    async def compute(self, region: Optional[str] = None) -> dict:
        grid_filter = None
        if region and region != ALL_REGIONS:
            grid_filter = {"GridArea": [region]}

        records = await self.client.fetch_datahub_pricelist(
            filter=grid_filter,
            sort="ValidFrom DESC",
            limit=5000,
        )
        return self.build_payload(records, region)

    async def get_pricelists(self, region: Optional[str] = None) -> CacheResult:
        primary_key, latest_key = self.cache_keys(region)

        return await self.orchestrator.get_or_compute(
            primary_key,
            latest_key,
            lambda: self.compute(region),
            primary_ttl=self.cache_ttl,
            latest_ttl=self.fallback_ttl,
            fallback=lambda: self.fallback_payload(region),
            resource=self.resource,
        )


class SpotPriceService:
    """Hourly spot prices with fees and VAT added"""

    resource = "electricity-prices"

    def __init__(
        self,
        client: EnergiDataServiceClient,
        orchestrator: CacheOrchestrator,
        cache_ttl: int = 300,
        fallback_ttl: int = 3600,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.cache_ttl = cache_ttl
        self.fallback_ttl = fallback_ttl
        self._now = now

    @staticmethod
    def cache_keys(price_area: str, start: str, end: str) -> tuple[str, str]:
        return f"prices:{price_area}:{start}:{end}", f"prices:{price_area}"

    @staticmethod
    def with_fees(record: dict) -> dict:
        """Add kr/kWh spot and consumer prices to an Elspotprices record"""
        spot_price_kwh = to_float(record.get("SpotPriceDKK")) / 1000
        base_price_kwh = spot_price_kwh + SYSTEM_FEE_KWH + ELECTRICITY_TAX_KWH
        return {
            **record,
            "SpotPriceKWh": spot_price_kwh,
            "TotalPriceKWh": base_price_kwh * VAT_RATE,
        }

    def fallback_payload(self, price_area: str, start: str, end: str, status: str = "degraded") -> dict:
        return {
            "records": [],
            "metadata": {
                "region": price_area,
                "priceArea": price_area,
                "startDate": start,
                "endDate": end,
                "currency": "DKK",
                "includeFees": True,
                "lastUpdated": self._now().isoformat(),
                "status": status,
                "message": "Price data temporarily unavailable",
            },
        }

    async def compute(self, price_area: str, start: str, end: str) -> dict:
        payload = await self.client.fetch_spot_prices(price_area, start, end)
        records = [self.with_fees(record) for record in payload["records"]]
        return {
            **payload,
            "records": records,
            "metadata": {
                "region": price_area,
                "priceArea": price_area,
                "startDate": start,
                "endDate": end,
                "currency": "DKK",
                "includeFees": True,
                "lastUpdated": self._now().isoformat(),
            },
        }

    async def get_prices(self, price_area: str, start: str, end: str) -> CacheResult:
        primary_key, latest_key = self.cache_keys(price_area, start, end)

        return await self.orchestrator.get_or_compute(
            primary_key,
            latest_key,
            lambda: self.compute(price_area, start, end),
            primary_ttl=self.cache_ttl,
            latest_ttl=self.fallback_ttl,
            fallback=lambda: self.fallback_payload(price_area, start, end),
            resource=self.resource,
        )


@dataclass
class PricingServices:
    """Everything the routes need, built once per worker"""

    client: EnergiDataServiceClient
    durable: DurableCache
    tariffs: TariffService
    pricelists: PricelistService
    spot_prices: SpotPriceService

    async def close(self) -> None:
        await self.client.close()

    def get_metrics(self) -> dict:
        return {
            "durable": self.durable.get_metrics(),
            "memory": {
                service.resource: service.orchestrator.memory.get_metrics()
                for service in (self.tariffs, self.pricelists, self.spot_prices)
            },
        }


def create_services_from_settings(settings, redis_client=None, transport=None) -> PricingServices:
    """
    Wire client, caches and services from application settings.

    Each service gets its own MemoryCache; all of them share the durable
    gateway, the HTTP client and the upstream rate limiter.
    """
    rate_limiter = SlidingWindowLimiter(
        requests_per_window=settings.upstream_rate_limit_requests,
        window_seconds=settings.upstream_rate_limit_window_seconds,
        name="energidataservice",
    )
    client = EnergiDataServiceClient(
        base_url=settings.energidata_base_url,
        timeout=settings.upstream_timeout_seconds,
        user_agent=settings.upstream_user_agent,
        rate_limiter=rate_limiter,
        rate_limit_wait=settings.upstream_rate_limit_wait_seconds,
        transport=transport,
    )
    durable = DurableCache(redis_client, key_prefix=settings.kv_key_prefix)
    retry_policy = RetryPolicy(
        max_attempts=settings.upstream_retry_attempts,
        base_delay=settings.upstream_retry_base_delay_seconds,
        jitter=settings.upstream_retry_jitter,
        should_retry=retry_always if settings.upstream_retry_client_errors else is_transient,
    )

    def orchestrator(name: str, ttl: int) -> CacheOrchestrator:
        memory = MemoryCache(
            capacity=settings.memory_cache_capacity,
            default_ttl=ttl,
            name=name,
        )
        return CacheOrchestrator(
            durable,
            memory,
            retry_policy=retry_policy,
            request_budget=settings.upstream_request_budget_seconds,
        )

    services = PricingServices(
        client=client,
        durable=durable,
        tariffs=TariffService(
            client,
            orchestrator(TariffService.resource, settings.tariff_cache_ttl),
            cache_ttl=settings.tariff_cache_ttl,
            fallback_ttl=settings.tariff_fallback_ttl,
            empty_ttl=settings.tariff_empty_ttl,
        ),
        pricelists=PricelistService(
            client,
            orchestrator(PricelistService.resource, settings.pricelist_cache_ttl),
            cache_ttl=settings.pricelist_cache_ttl,
            fallback_ttl=settings.pricelist_fallback_ttl,
        ),
        spot_prices=SpotPriceService(
            client,
            orchestrator(SpotPriceService.resource, settings.spot_price_cache_ttl),
            cache_ttl=settings.spot_price_cache_ttl,
            fallback_ttl=settings.spot_price_fallback_ttl,
        ),
    )

    logger.info(
        "pricing_services_created",
        durable_configured=durable.is_configured,
        retry_attempts=retry_policy.max_attempts,
    )
    return services
