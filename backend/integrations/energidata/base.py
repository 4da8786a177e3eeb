"""
Shared Types for the Energi Data Service Integration

Provides the pieces every layer of the fetch-and-cache pipeline agrees on:
- Enums for cache status, tariff type and season
- The upstream error taxonomy
- Data models for raw price list records and derived tariffs
- Retry policy configuration
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
import math
import random

import structlog

logger = structlog.get_logger(__name__)

HOURS_PER_DAY = 24


# =============================================================================
# ENUMS
# =============================================================================


class CacheStatus(str, Enum):
    """Where a response came from; sent to clients as the X-Cache header"""

    HIT_KV = "HIT-KV"
    HIT_MEMORY = "HIT-MEMORY"
    MISS = "MISS"
    HIT_STALE = "HIT-STALE"
    MISS_FALLBACK = "MISS-FALLBACK"
    ERROR = "ERROR"

    @property
    def is_degraded(self) -> bool:
        return self in (CacheStatus.HIT_STALE, CacheStatus.MISS_FALLBACK, CacheStatus.ERROR)


class TariffType(str, Enum):
    FLAT = "flat"
    TIME_OF_USE = "time-of-use"


class Season(str, Enum):
    WINTER = "winter"
    SUMMER = "summer"
    YEAR_ROUND = "year-round"


# =============================================================================
# EXCEPTIONS
# =============================================================================


class APIError(Exception):
    """Base exception for upstream API errors"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        api_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.api_name = api_name

    def __str__(self) -> str:
        parts = [self.message]
        if self.api_name:
            parts.insert(0, f"[{self.api_name}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)


class TransientUpstreamError(APIError):
    """Failure that may succeed on retry (timeouts, 5xx, 429, network)"""


class UpstreamTimeoutError(TransientUpstreamError):
    """Raised when no response arrives before the request deadline"""

    def __init__(self, message: str = "Upstream request timed out", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamConnectionError(TransientUpstreamError):
    """Raised on transport failures other than timeouts"""

    def __init__(self, message: str = "Upstream connection failed", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamRateLimitedError(TransientUpstreamError):
    """Raised when the local upstream rate limit yields no token in time"""

    def __init__(self, message: str = "Upstream rate limit exhausted", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamPayloadError(TransientUpstreamError):
    """Raised when the upstream body is not the JSON document we expect"""

    def __init__(self, message: str = "Malformed upstream payload", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamClientError(APIError):
    """4xx response that is not treated as an empty result"""


def is_transient(exc: BaseException) -> bool:
    """Retry predicate that skips errors a retry cannot fix"""
    return not isinstance(exc, UpstreamClientError)


def retry_always(exc: BaseException) -> bool:
    return True


# =============================================================================
# DATA MODELS
# =============================================================================


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp.

    Energi Data Service sends ISO 8601 strings without an offset; those are
    read as UTC. Unparseable values become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("unparseable_timestamp", value=value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_unparseable_timestamp(value: Any) -> bool:
    """Set to something that is not a readable timestamp"""
    return value not in (None, "") and parse_timestamp(value) is None


def to_float(value: Any) -> float:
    """Coerce an upstream number, defaulting missing, bad or non-finite values to 0"""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    # "NaN" and "inf" parse fine but cannot be sent as JSON
    return result if math.isfinite(result) else 0.0


@dataclass(frozen=True)
class PriceListRecord:
    """
    One DatahubPricelist row.

    Only the fields the pipeline reads are kept; prices are always 24
    floats with missing hours set to 0.
    """

    gln: str
    charge_owner: str
    grid_area: Optional[str]
    charge_type: Optional[str]
    charge_type_code: Optional[str]
    prices: tuple[float, ...]
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    description: Optional[str] = None
    resolution: Optional[str] = None
    # ValidTo was present but unreadable; such a record is never in force
    valid_to_unparseable: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "PriceListRecord":
        """Create from an upstream record"""
        return cls(
            gln=str(data.get("GLN_Number") or ""),
            charge_owner=str(data.get("ChargeOwner") or ""),
            grid_area=data.get("GridArea"),
            charge_type=data.get("ChargeType"),
            charge_type_code=data.get("ChargeTypeCode"),
            prices=tuple(to_float(data.get(f"Price{hour}")) for hour in range(1, HOURS_PER_DAY + 1)),
            valid_from=parse_timestamp(data.get("ValidFrom")),
            valid_to=parse_timestamp(data.get("ValidTo")),
            description=data.get("Description"),
            resolution=data.get("ResolutionDuration"),
            valid_to_unparseable=is_unparseable_timestamp(data.get("ValidTo")),
        )

    def is_valid_at(self, moment: datetime) -> bool:
        """Whether [valid_from, valid_to) contains moment (open end if valid_to is None)"""
        if self.valid_from is None or self.valid_to_unparseable:
            return False
        if moment < self.valid_from:
            return False
        return self.valid_to is None or moment < self.valid_to


@dataclass(frozen=True)
class TariffResult:
    """
    Canonical grid tariff derived from a single price list record.
    """

    gln: Optional[str]
    provider: str
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    hourly_rates: tuple[float, ...]
    average_rate: float
    tariff_type: TariffType
    season: Season

    @classmethod
    def empty(cls, gln: Optional[str]) -> "TariffResult":
        """Zero tariff used when no record exists or nothing can be fetched"""
        return cls(
            gln=gln,
            provider="",
            valid_from=None,
            valid_to=None,
            hourly_rates=(0.0,) * HOURS_PER_DAY,
            average_rate=0.0,
            tariff_type=TariffType.FLAT,
            season=Season.YEAR_ROUND,
        )

    @property
    def is_empty(self) -> bool:
        return self.provider == "" and self.valid_from is None and not any(self.hourly_rates)

    def to_dict(self) -> dict:
        """Convert to the JSON shape served to the site"""
        return {
            "gln": self.gln,
            "provider": self.provider,
            "validFrom": self.valid_from.isoformat() if self.valid_from else None,
            "validTo": self.valid_to.isoformat() if self.valid_to else None,
            "hourlyRates": list(self.hourly_rates),
            "averageRate": self.average_rate,
            "tariffType": self.tariff_type.value,
            "season": self.season.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TariffResult":
        """Create from dictionary"""
        return cls(
            gln=data.get("gln"),
            provider=data.get("provider") or "",
            valid_from=parse_timestamp(data.get("validFrom")),
            valid_to=parse_timestamp(data.get("validTo")),
            hourly_rates=tuple(to_float(rate) for rate in data.get("hourlyRates") or ()),
            average_rate=to_float(data.get("averageRate")),
            tariff_type=TariffType(data.get("tariffType", TariffType.FLAT.value)),
            season=Season(data.get("season", Season.YEAR_ROUND.value)),
        )


# =============================================================================
# RETRY CONFIGURATION
# =============================================================================


@dataclass
class RetryPolicy:
    """Configuration for retry behavior"""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds before the second attempt
    jitter: float = 0.0  # +/- fraction applied to each delay
    should_retry: Callable[[BaseException], bool] = field(default=retry_always)

    def get_delay(self, attempt: int) -> float:
        """
        Delay in seconds before the given attempt (1-based).

        Attempt 1 runs immediately; attempt n waits base_delay * 2^(n-2).
        """
        if attempt <= 1:
            return 0.0

        delay = self.base_delay * (2 ** (attempt - 2))

        if self.jitter:
            delay = delay * random.uniform(1 - self.jitter, 1 + self.jitter)

        return delay
