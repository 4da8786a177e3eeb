"""
Caching Layer for Energi Data Service Responses

Two tiers:
- MemoryCache: process-local LRU map with per-entry TTL. Lives as long as
  one warm worker; other workers never see it.
- DurableCache: JSON blobs in Redis, shared by every worker. Each resource
  is written under a short-lived primary key and a longer-lived
  "latest known good" key that only serves as a fallback.

Neither tier is a source of truth. Failures read as misses.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional
import json
import threading
import time

import structlog

logger = structlog.get_logger(__name__)


# =============================================================================
# MEMORY CACHE
# =============================================================================


class CacheEntry:
    """A cached value and the moment it stops being served"""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class MemoryCache:
    """
    In-process LRU cache with per-entry TTL.

    Recency is updated by get() on a live entry, so eviction order follows
    last access rather than insertion. Expired entries are removed when read
    and purged before any LRU eviction.
    """

    def __init__(
        self,
        capacity: int = 100,
        default_ttl: float = 300.0,
        name: str = "memory",
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.default_ttl = default_ttl
        self.name = name
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        # FastAPI runs sync dependencies in a threadpool; keep mutations atomic
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self.logger = logger.bind(component="memory_cache", cache=name)

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None"""
        with self._lock:
            entry = self._entries.get(key)

            if not isinstance(entry, CacheEntry):
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                self.logger.debug("memory_cache_expired", key=key)
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value for ttl seconds (default_ttl when not given)"""
        effective_ttl = self.default_ttl if ttl is None else ttl

        with self._lock:
            now = self._clock()
            self._entries.pop(key, None)

            if len(self._entries) >= self.capacity:
                self._purge_expired_locked(now)

            while len(self._entries) >= self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                self.logger.debug("memory_cache_evicted", key=evicted_key)

            self._entries[key] = CacheEntry(value, now + effective_ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Remove all expired entries, returning how many were dropped"""
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def _purge_expired_locked(self, now: float) -> int:
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_metrics(self) -> dict:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate_percent": round(hit_rate, 2),
        }


# =============================================================================
# DURABLE CACHE
# =============================================================================


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a durable read: found, absent, or failed"""

    value: Any = None
    found: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def hit(cls, value: Any) -> "CacheLookup":
        return cls(value=value, found=True)

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls()

    @classmethod
    def failure(cls, error: Exception) -> "CacheLookup":
        return cls(error=error)


class DurableCache:
    """
    Redis-backed JSON store shared across workers.

    The public read/write methods never raise: a Redis outage has to degrade
    the routes, not crash them. Without a client (Redis not configured)
    every read misses and every write reports False.
    """

    def __init__(self, redis_client=None, key_prefix: str = ""):
        self.redis = redis_client
        self.key_prefix = key_prefix.rstrip(":")
        self.logger = logger.bind(component="durable_cache")

        self._hits = 0
        self._misses = 0
        self._errors = 0

    @property
    def is_configured(self) -> bool:
        return self.redis is not None

    def _full_key(self, key: str) -> str:
        if not self.key_prefix:
            return key
        return f"{self.key_prefix}:{key}"

    def _strip_prefix(self, full_key: str) -> str:
        if self.key_prefix and full_key.startswith(f"{self.key_prefix}:"):
            return full_key[len(self.key_prefix) + 1:]
        return full_key

    def _serialize(self, value: Any) -> str:
        # Strict JSON: a NaN stored here would fail every response built from it
        return json.dumps(value, default=str, allow_nan=False)

    def _deserialize(self, data: Any) -> Any:
        return json.loads(data)

    async def lookup(self, key: str) -> CacheLookup:
        """Read key, keeping 'absent' and 'backend failed' apart"""
        if self.redis is None:
            self._misses += 1
            return CacheLookup.miss()

        try:
            raw = await self.redis.get(self._full_key(key))
            if raw is None:
                self._misses += 1
                return CacheLookup.miss()
            value = self._deserialize(raw)
        except Exception as e:
            self._errors += 1
            return CacheLookup.failure(e)

        self._hits += 1
        return CacheLookup.hit(value)

    async def read_json(self, key: str) -> Optional[Any]:
        """Return the cached JSON value for key, or None on miss or error"""
        result = await self.lookup(key)

        if not result.ok:
            self.logger.error(
                "durable_read_failed",
                key=key,
                error=str(result.error),
                error_type=type(result.error).__name__,
            )
            return None

        if result.found:
            self.logger.debug("durable_cache_hit", key=key)
            return result.value

        return None

    async def write_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store value under key for ttl_seconds; False on failure"""
        if self.redis is None:
            return False

        try:
            await self.redis.set(self._full_key(key), self._serialize(value), ex=int(ttl_seconds))
        except Exception as e:
            self._errors += 1
            self.logger.error(
                "durable_write_failed",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self.logger.debug("durable_cache_set", key=key, ttl=ttl_seconds)
        return True

    async def write_json_with_fallback(
        self,
        primary_key: str,
        latest_key: str,
        value: Any,
        primary_ttl: int,
        latest_ttl: int,
    ) -> bool:
        """
        Write value under the primary key and the latest-good key.

        The latest-good copy never expires before the primary one. Its
        failure is logged only; the return value reports the primary write.
        """
        if latest_ttl < primary_ttl:
            self.logger.warning(
                "latest_ttl_raised_to_primary",
                latest_key=latest_key,
                latest_ttl=latest_ttl,
                primary_ttl=primary_ttl,
            )
            latest_ttl = primary_ttl

        primary_ok = await self.write_json(primary_key, value, primary_ttl)
        latest_ok = await self.write_json(latest_key, value, latest_ttl)

        if not latest_ok and self.redis is not None:
            self.logger.warning("durable_latest_write_failed", latest_key=latest_key)

        return primary_ok

    async def exists(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.exists(self._full_key(key)))
        except Exception as e:
            self._errors += 1
            self.logger.error("durable_exists_failed", key=key, error=str(e))
            return False

    async def keys_by_prefix(self, prefix: str) -> list[str]:
        """List keys starting with prefix (SCAN, never KEYS)"""
        if self.redis is None:
            return []
        try:
            keys = []
            async for full_key in self.redis.scan_iter(match=f"{self._full_key(prefix)}*"):
                if isinstance(full_key, bytes):
                    full_key = full_key.decode("utf-8")
                keys.append(self._strip_prefix(full_key))
            return sorted(keys)
        except Exception as e:
            self._errors += 1
            self.logger.error("durable_scan_failed", prefix=prefix, error=str(e))
            return []

    async def ping(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            self.logger.warning("durable_ping_failed", error=str(e))
            return False

    def get_metrics(self) -> dict:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        return {
            "configured": self.is_configured,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate_percent": round(hit_rate, 2),
        }
