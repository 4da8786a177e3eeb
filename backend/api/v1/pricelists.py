"""
Price List API Endpoints

Provider price lists currently in force, for one grid region or the whole
country.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

import structlog

from api.dependencies import get_pricelist_service
from api.responses import (
    CacheWindow,
    cached_json_response,
    error_payload_response,
    invalid_params_response,
    preflight_response,
    sanitize_validation_errors,
)
from integrations.energidata import PricelistService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Price lists"])

PRICELIST_WINDOW = CacheWindow(s_maxage=300, swr=600)


class PricelistQuery(BaseModel):
    region: Optional[Literal["DK1", "DK2", "Danmark"]] = None


@router.get(
    "/pricelists",
    summary="Get provider price lists",
    responses={
        200: {"description": "Price lists (possibly stale or empty, see X-Cache)"},
        400: {"description": "Invalid region"},
    },
)
async def get_pricelists(
    region: Optional[str] = Query(None, description="DK1, DK2 or Danmark"),
    pricelist_service: PricelistService = Depends(get_pricelist_service),
) -> JSONResponse:
    try:
        query = PricelistQuery(region=region or None)
    except ValidationError as exc:
        return invalid_params_response(
            "INVALID_PARAMS",
            "Invalid region parameter",
            sanitize_validation_errors(exc.errors()),
        )

    try:
        result = await pricelist_service.get_pricelists(query.region)
        return cached_json_response(result, PRICELIST_WINDOW)
    except Exception as exc:
        logger.error("pricelist_request_failed", region=query.region, error=str(exc), exc_info=True)
        return error_payload_response(pricelist_service.fallback_payload(query.region, status="error"))


@router.options("/pricelists", include_in_schema=False)
async def pricelist_preflight() -> Response:
    return preflight_response()
