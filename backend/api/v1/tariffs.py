"""
Tariff API Endpoints

Grid tariff for a grid company (GLN) and charge code, normalized to 24
hourly rates with a consumption-weighted average.

Route
-----
GET     /tariffs?gln=5790000610877&chargeCode=DT_C_01
OPTIONS /tariffs
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import structlog

from api.dependencies import get_tariff_service
from api.responses import (
    CacheWindow,
    cached_json_response,
    error_payload_response,
    invalid_params_response,
    preflight_response,
    sanitize_validation_errors,
)
from integrations.energidata import CacheResult, TariffService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Tariffs"])

TARIFF_WINDOW = CacheWindow(s_maxage=86400, swr=172800)
# Unknown GLNs are cached briefly so a newly published tariff shows up soon
EMPTY_TARIFF_WINDOW = CacheWindow(s_maxage=900)


# =============================================================================
# Request Models
# =============================================================================


class TariffQuery(BaseModel):
    """Validated query string for GET /tariffs"""

    model_config = ConfigDict(populate_by_name=True)

    gln: str = Field(..., pattern=r"^[0-9]{13}$", description="13-digit GLN of the grid company")
    charge_code: Optional[str] = Field(
        None, alias="chargeCode", min_length=2, max_length=16, description="Tariff charge code"
    )


def _window_for(result: CacheResult) -> CacheWindow:
    value = result.value
    if isinstance(value, dict) and not value.get("provider"):
        return EMPTY_TARIFF_WINDOW
    return TARIFF_WINDOW


# =============================================================================
# Endpoints
# =============================================================================


@router.get(
    "/tariffs",
    summary="Get the grid tariff for a grid company",
    responses={
        200: {"description": "Tariff (possibly stale or empty, see X-Cache)"},
        400: {"description": "Invalid gln or chargeCode"},
    },
)
async def get_tariff(
    gln: Optional[str] = Query(None, description="13-digit GLN of the grid company"),
    charge_code: Optional[str] = Query(None, alias="chargeCode", description="Tariff charge code"),
    tariff_service: TariffService = Depends(get_tariff_service),
) -> JSONResponse:
    """
    Get the tariff in force now for a grid company.

    Always answers 200 once parameters are valid: upstream failures fall
    back to the last known good tariff, then to an empty tariff.
    """
    try:
        query = TariffQuery(gln=gln, chargeCode=charge_code or None)
    except ValidationError as exc:
        return invalid_params_response(
            "INVALID_PARAMS",
            "Invalid gln or chargeCode parameter",
            sanitize_validation_errors(exc.errors()),
        )

    try:
        result = await tariff_service.get_tariff(query.gln, query.charge_code)
        return cached_json_response(result, _window_for(result))
    except Exception as exc:
        logger.error("tariff_request_failed", gln=query.gln, error=str(exc), exc_info=True)
        return error_payload_response(TariffService.fallback_payload(None, status="error"))


@router.options("/tariffs", include_in_schema=False)
async def tariff_preflight() -> Response:
    return preflight_response()
