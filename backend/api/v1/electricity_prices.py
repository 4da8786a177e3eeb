"""
Electricity Price API Endpoints

Hourly spot prices for a price area, in DKK/MWh and kr/kWh with system fee,
electricity tax and VAT added.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

import structlog

from api.dependencies import get_spot_price_service
from api.responses import (
    CacheWindow,
    cached_json_response,
    error_payload_response,
    invalid_params_response,
    preflight_response,
    sanitize_validation_errors,
)
from integrations.energidata import SpotPriceService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Electricity prices"])

SPOT_PRICE_WINDOW = CacheWindow(s_maxage=300, swr=600)
DEFAULT_PRICE_AREA = "DK2"

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

PriceArea = Literal["DK1", "DK2"]


# =============================================================================
# Request Models
# =============================================================================


class ElectricityPriceQuery(BaseModel):
    """
    Validated query string for GET /electricity-prices.

    ``area`` is accepted as an alias of ``region`` and wins when both are
    given. Dates are calendar days in UTC; the upstream window is
    [date, endDate + 1 day).
    """

    model_config = ConfigDict(populate_by_name=True)

    region: PriceArea = DEFAULT_PRICE_AREA
    area: Optional[PriceArea] = None
    day: Optional[date] = Field(None, alias="date")
    end_date: Optional[date] = Field(None, alias="endDate")

    @field_validator("day", "end_date", mode="before")
    @classmethod
    def require_iso_day(cls, v):
        if v is None or isinstance(v, date):
            return v
        if not isinstance(v, str) or not _DATE_PATTERN.match(v):
            raise ValueError("must be a date in YYYY-MM-DD format")
        return v

    @model_validator(mode="after")
    def check_range(self) -> "ElectricityPriceQuery":
        if self.day and self.end_date and self.end_date < self.day:
            raise ValueError("endDate must not be before date")
        return self

    @property
    def price_area(self) -> str:
        return self.area or self.region

    def date_range(self, today: date) -> tuple[str, str]:
        start = self.day or today
        last = self.end_date or start
        return start.isoformat(), (last + timedelta(days=1)).isoformat()


# =============================================================================
# Endpoints
# =============================================================================


@router.get(
    "/electricity-prices",
    summary="Get hourly spot prices",
    responses={
        200: {"description": "Spot prices (possibly stale or empty, see X-Cache)"},
        400: {"description": "Invalid region, area or date"},
    },
)
async def get_electricity_prices(
    region: Optional[str] = Query(None, description="Price area DK1 or DK2 (default DK2)"),
    area: Optional[str] = Query(None, description="Alias of region"),
    day: Optional[str] = Query(None, alias="date", description="First day, YYYY-MM-DD (default today UTC)"),
    end_date: Optional[str] = Query(None, alias="endDate", description="Last day, YYYY-MM-DD"),
    spot_price_service: SpotPriceService = Depends(get_spot_price_service),
) -> JSONResponse:
    params = {
        "region": region or None,
        "area": area or None,
        "date": day or None,
        "endDate": end_date or None,
    }
    try:
        query = ElectricityPriceQuery(**{k: v for k, v in params.items() if v is not None})
    except ValidationError as exc:
        return invalid_params_response(
            "INVALID_PARAMS",
            "Invalid region, area or date parameter",
            sanitize_validation_errors(exc.errors()),
        )

    price_area = query.price_area
    start, end = query.date_range(datetime.now(timezone.utc).date())

    try:
        result = await spot_price_service.get_prices(price_area, start, end)
        return cached_json_response(result, SPOT_PRICE_WINDOW)
    except Exception as exc:
        logger.error(
            "electricity_price_request_failed",
            price_area=price_area,
            start=start,
            end=end,
            error=str(exc),
            exc_info=True,
        )
        return error_payload_response(
            spot_price_service.fallback_payload(price_area, start, end, status="error")
        )


@router.options("/electricity-prices", include_in_schema=False)
async def electricity_price_preflight() -> Response:
    return preflight_response()
