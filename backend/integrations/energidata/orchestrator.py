"""
Get-or-compute with Fallback

Combines the durable cache, the memory cache and a retried upstream compute
into one lookup with a fixed precedence:

    durable primary -> memory -> compute (retried) -> durable latest -> fallback

Durable is consulted before memory so every worker agrees on what is
cached; the memory tier only saves a Redis round trip when Redis is
missing or cold.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union
import asyncio
import time

from prometheus_client import Counter
import structlog

from .base import CacheStatus, RetryPolicy
from .cache import DurableCache, MemoryCache
from .http import retry_with_policy

logger = structlog.get_logger(__name__)

CACHE_LOOKUPS = Counter(
    "elportal_cache_lookups_total",
    "Cache lookups by resource and outcome",
    ["resource", "status"],
)


@dataclass(frozen=True)
class CacheResult:
    """Value handed to a route plus where it came from"""

    value: Any
    cache_status: CacheStatus

    @property
    def is_degraded(self) -> bool:
        return self.cache_status.is_degraded


@dataclass(frozen=True)
class ShortLived:
    """
    Compute outcome that should only be cached briefly.

    Used for "upstream has nothing for this key" answers: the value is
    stored in memory and under the primary key for ttl_seconds, and is never
    promoted to the latest-good key.
    """

    value: Any
    ttl_seconds: int


ComputeFn = Callable[[], Awaitable[Union[Any, ShortLived]]]


class CacheOrchestrator:
    """
    Resilient get-or-compute over both cache tiers.

    Concurrent misses for the same primary key share a single in-flight
    compute task, so a cold key costs one upstream sequence per worker
    instead of one per request.
    """

    def __init__(
        self,
        durable: DurableCache,
        memory: MemoryCache,
        retry_policy: Optional[RetryPolicy] = None,
        request_budget: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            durable: Shared Redis gateway
            memory: Worker-local cache owned by this orchestrator
            retry_policy: Attempts and backoff for the compute step
            request_budget: Seconds one lookup may spend retrying upstream
        """
        self.durable = durable
        self.memory = memory
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_budget = request_budget
        self._clock = clock

        self._in_flight: dict[str, asyncio.Task] = {}

        self.logger = logger.bind(component="cache_orchestrator", cache=memory.name)

    async def get_or_compute(
        self,
        primary_key: str,
        latest_key: str,
        compute: ComputeFn,
        *,
        primary_ttl: int,
        latest_ttl: int,
        fallback: Union[Any, Callable[[], Any]],
        resource: str = "default",
    ) -> CacheResult:
        """
        Resolve primary_key through the cache tiers, computing on a miss.

        Never raises for upstream or cache failures: the worst case is the
        fallback payload tagged MISS-FALLBACK.

        Args:
            primary_key: Key built from every request parameter
            latest_key: Key built from the resource identity only
            compute: Coroutine function producing the fresh value
            primary_ttl: Seconds to keep the fresh value (both tiers)
            latest_ttl: Seconds to keep the latest-good copy
            fallback: Payload, or factory for it, when nothing else works
            resource: Label for logs and metrics
        """
        cached = await self.durable.read_json(primary_key)
        if cached is not None:
            return self._result(cached, CacheStatus.HIT_KV, resource, primary_key)

        cached = self.memory.get(primary_key)
        if cached is not None:
            return self._result(cached, CacheStatus.HIT_MEMORY, resource, primary_key)

        try:
            value = await self._compute_once(primary_key, latest_key, compute, primary_ttl, latest_ttl)
            return self._result(value, CacheStatus.MISS, resource, primary_key)
        except Exception as e:
            self.logger.error(
                "compute_failed",
                resource=resource,
                key=primary_key,
                error=str(e),
                error_type=type(e).__name__,
            )

        stale = await self.durable.read_json(latest_key)
        if stale is not None:
            self.logger.warning("serving_stale", resource=resource, latest_key=latest_key)
            return self._result(stale, CacheStatus.HIT_STALE, resource, primary_key)

        self.logger.warning("serving_fallback", resource=resource, key=primary_key)
        payload = fallback() if callable(fallback) else fallback
        return self._result(payload, CacheStatus.MISS_FALLBACK, resource, primary_key)

    def _result(self, value: Any, status: CacheStatus, resource: str, key: str) -> CacheResult:
        CACHE_LOOKUPS.labels(resource=resource, status=status.value).inc()
        self.logger.debug("cache_lookup", resource=resource, key=key, status=status.value)
        return CacheResult(value=value, cache_status=status)

    async def _compute_once(
        self,
        primary_key: str,
        latest_key: str,
        compute: ComputeFn,
        primary_ttl: int,
        latest_ttl: int,
    ) -> Any:
        """Join the in-flight compute for primary_key, starting one if needed"""
        # No await between lookup and insert, so this is atomic on the loop
        task = self._in_flight.get(primary_key)
        if task is None:
            task = asyncio.create_task(
                self._compute_and_store(primary_key, latest_key, compute, primary_ttl, latest_ttl)
            )
            self._in_flight[primary_key] = task
            task.add_done_callback(lambda t: self._forget(primary_key, t))
        else:
            self.logger.debug("compute_deduplicated", key=primary_key)

        # A cancelled waiter must not cancel the work other waiters share
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter went away
            task.exception()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def _compute_and_store(
        self,
        primary_key: str,
        latest_key: str,
        compute: ComputeFn,
        primary_ttl: int,
        latest_ttl: int,
    ) -> Any:
        deadline = None
        if self.request_budget is not None:
            deadline = self._clock() + self.request_budget

        outcome = await retry_with_policy(
            compute, self.retry_policy, deadline=deadline, clock=self._clock
        )

        if isinstance(outcome, ShortLived):
            self.memory.set(primary_key, outcome.value, outcome.ttl_seconds)
            await self.durable.write_json(primary_key, outcome.value, outcome.ttl_seconds)
            return outcome.value

        self.memory.set(primary_key, outcome, primary_ttl)
        await self.durable.write_json_with_fallback(
            primary_key, latest_key, outcome, primary_ttl, latest_ttl
        )
        return outcome
