"""
Cache Health Check API

Deep health check for the data pipeline: durable store connectivity,
an inventory of cached entries per resource, and hit/miss counters for the
durable and in-process caches.

The endpoint is unauthenticated so uptime monitors can call it. Only key
names and counters are returned, never cached payloads.

Route
-----
GET /health  durable store status, cache inventory and metrics
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import structlog

from api.dependencies import get_pricing_services
from integrations.energidata import DurableCache, PricelistService, PricingServices

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])

# Key prefixes counted in the inventory, by resource
INVENTORY_PREFIXES = {
    "tariffs": "tariff:",
    "pricelists": "pricelists:",
    "prices": "prices:",
}

# Keys listed in the response are capped so a large cache stays readable
MAX_LISTED_KEYS = 10


# =============================================================================
# Helpers
# =============================================================================


async def _check_durable(durable: DurableCache) -> Dict[str, Any]:
    """PING the durable store and measure latency."""
    if not durable.is_configured:
        return {"status": "not_configured"}

    start = time.monotonic()
    alive = await durable.ping()
    latency_ms = round((time.monotonic() - start) * 1000, 2)

    if not alive:
        return {"status": "down", "latency_ms": latency_ms}
    return {"status": "up", "latency_ms": latency_ms}


async def _cache_inventory(durable: DurableCache) -> Dict[str, Any]:
    counts: Dict[str, Any] = {}
    samples: Dict[str, list] = {}

    for resource, prefix in INVENTORY_PREFIXES.items():
        keys = await durable.keys_by_prefix(prefix)
        counts[resource] = len(keys)
        samples[resource] = keys[:MAX_LISTED_KEYS]

    latest_key = PricelistService.cache_keys(None)[1]

    return {
        **counts,
        "total": sum(counts.values()),
        "keys": samples,
        "latestPricelistCached": await durable.exists(latest_key),
    }


# =============================================================================
# Endpoint
# =============================================================================


@router.get(
    "/health",
    summary="Cache and durable store health",
    response_description="Durable store status, cache inventory and cache metrics",
)
async def check_cache_health(
    services: PricingServices = Depends(get_pricing_services),
) -> JSONResponse:
    """
    Response shape::

        {
          "status": "healthy" | "degraded",
          "timestamp": "...",
          "checks": {
            "durable":   {"status": "up", "latency_ms": 1.1},
            "inventory": {"tariffs": 12, "pricelists": 4, "prices": 30, ...},
            "metrics":   {"durable": {...}, "memory": {...}}
          }
        }

    HTTP 503 is returned when a configured durable store does not answer.
    """
    durable = services.durable
    checks: Dict[str, Any] = {"durable": await _check_durable(durable)}

    if checks["durable"]["status"] == "up":
        checks["inventory"] = await _cache_inventory(durable)

    checks["metrics"] = services.get_metrics()

    overall = "degraded" if checks["durable"]["status"] == "down" else "healthy"
    http_status = 200 if overall == "healthy" else 503

    logger.info("cache_health_checked", overall=overall, durable=checks["durable"]["status"])

    return JSONResponse(
        status_code=http_status,
        content={
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        },
        headers={"Cache-Control": "no-store"},
    )
