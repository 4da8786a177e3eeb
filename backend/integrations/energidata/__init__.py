"""
Energi Data Service Integration Layer

Resilient fetch-and-cache pipeline behind the public price routes:
- Async HTTP with httpx and a hard per-request timeout
- Retry with exponential backoff
- Two-tier caching: Redis (shared) and an in-process LRU (per worker)
- Stale "latest known good" fallback when upstream fails
- Single-flight deduplication of concurrent cache misses
- Grid tariff normalization (hourly rates, weighted average, season)
"""

from .base import (
    APIError,
    CacheStatus,
    PriceListRecord,
    RetryPolicy,
    Season,
    TariffResult,
    TariffType,
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamConnectionError,
    UpstreamPayloadError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
    is_transient,
)
from .cache import CacheLookup, DurableCache, MemoryCache
from .client import EnergiDataServiceClient
from .http import fetch_with_timeout, retry_with_backoff
from .orchestrator import CacheOrchestrator, CacheResult, ShortLived
from .rate_limiter import SlidingWindowLimiter
from .service import (
    PricelistService,
    PricingServices,
    SpotPriceService,
    TariffService,
    create_services_from_settings,
)
from .tariffs import normalize_tariff

__all__ = [
    # Models
    "CacheStatus",
    "PriceListRecord",
    "RetryPolicy",
    "Season",
    "TariffResult",
    "TariffType",
    # Errors
    "APIError",
    "TransientUpstreamError",
    "UpstreamClientError",
    "UpstreamConnectionError",
    "UpstreamPayloadError",
    "UpstreamRateLimitedError",
    "UpstreamTimeoutError",
    "is_transient",
    # Infrastructure
    "CacheLookup",
    "DurableCache",
    "MemoryCache",
    "CacheOrchestrator",
    "CacheResult",
    "ShortLived",
    "SlidingWindowLimiter",
    "fetch_with_timeout",
    "retry_with_backoff",
    # Upstream
    "EnergiDataServiceClient",
    "normalize_tariff",
    # Services
    "TariffService",
    "PricelistService",
    "SpotPriceService",
    "PricingServices",
    "create_services_from_settings",
]
