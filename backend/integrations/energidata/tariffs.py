"""
Grid Tariff Normalization

Turns raw DatahubPricelist records into a TariffResult: 24 hourly rates,
a consumption-weighted average, a flat/time-of-use classification and a
season tag. Everything here is a pure function of its arguments.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Union

from .base import (
    HOURS_PER_DAY,
    PriceListRecord,
    Season,
    TariffResult,
    TariffType,
)

# Typical Danish household consumption: share of daily load per hour group
LOW_HOURS = tuple(range(0, 6))
PEAK_HOURS = (17, 18, 19, 20)
HIGH_HOURS = tuple(range(6, 17)) + (21, 22, 23)

CONSUMPTION_PROFILE = (
    (LOW_HOURS, 0.25),
    (HIGH_HOURS, 0.60),
    (PEAK_HOURS, 0.15),
)

# April through September
SUMMER_MONTHS = frozenset(range(4, 10))

RecordLike = Union[PriceListRecord, dict]


def _as_record(record: RecordLike) -> PriceListRecord:
    if isinstance(record, PriceListRecord):
        return record
    return PriceListRecord.from_dict(record)


def select_current_record(
    records: Sequence[PriceListRecord],
    now: datetime,
) -> Optional[PriceListRecord]:
    """
    Pick the record in force at now, else the first (most recent) one.

    Records are expected newest first, as the upstream query sorts them.
    """
    for record in records:
        if record.is_valid_at(now):
            return record
    return records[0] if records else None


def classify_tariff(hourly_rates: Sequence[float]) -> TariffType:
    """Flat when every hour costs the same"""
    return TariffType.FLAT if len(set(hourly_rates)) <= 1 else TariffType.TIME_OF_USE


def season_for(valid_from: Optional[datetime]) -> Season:
    # No usable start month reads as winter; year-round is only for the zero tariff
    if valid_from is None:
        return Season.WINTER
    return Season.SUMMER if valid_from.month in SUMMER_MONTHS else Season.WINTER


def weighted_average(hourly_rates: Sequence[float]) -> float:
    """
    Average rate weighted by the household consumption profile.

    Each hour group contributes the plain mean of its hours times the
    group's weight. The weights sum to 1, so a uniform day averages to its
    own rate.
    """
    if len(hourly_rates) != HOURS_PER_DAY:
        raise ValueError(f"expected {HOURS_PER_DAY} hourly rates, got {len(hourly_rates)}")

    total = 0.0
    for hours, weight in CONSUMPTION_PROFILE:
        group_mean = sum(hourly_rates[h] for h in hours) / len(hours)
        total += group_mean * weight
    return total


def build_tariff(gln: Optional[str], record: PriceListRecord) -> TariffResult:
    """Derive the canonical tariff from one selected record"""
    hourly_rates = tuple(record.prices)
    return TariffResult(
        gln=gln,
        provider=record.charge_owner,
        valid_from=record.valid_from,
        valid_to=record.valid_to,
        hourly_rates=hourly_rates,
        average_rate=weighted_average(hourly_rates),
        tariff_type=classify_tariff(hourly_rates),
        season=season_for(record.valid_from),
    )


def normalize_tariff(
    gln: Optional[str],
    records: Iterable[RecordLike],
    now: Optional[datetime] = None,
) -> TariffResult:
    """
    Build the tariff for gln from its price list records.

    Args:
        gln: Grid company GLN the records belong to
        records: Raw upstream dicts or parsed records, newest first
        now: Reference time for validity windows (defaults to current UTC)

    Returns:
        The derived tariff, or TariffResult.empty(gln) when there are no
        records at all.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    parsed = [_as_record(r) for r in records]
    current = select_current_record(parsed, now)

    if current is None:
        return TariffResult.empty(gln)

    return build_tariff(gln, current)
