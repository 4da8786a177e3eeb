"""
Response Helpers

Cache-Control, CORS and X-Cache headers shared by the public data routes,
plus the 400 error envelope. CDN caching depends on these headers, so every
route builds its responses here.
"""

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import status
from fastapi.responses import JSONResponse, Response

from integrations.energidata import CacheResult, CacheStatus


@dataclass(frozen=True)
class CacheWindow:
    """CDN freshness: s-maxage plus optional stale-while-revalidate"""

    s_maxage: int
    swr: Optional[int] = None


DEGRADED_WINDOW = CacheWindow(s_maxage=60, swr=300)
ERROR_WINDOW = CacheWindow(s_maxage=60)


def cache_headers(s_maxage: int, swr: Optional[int] = None, public: bool = True) -> dict[str, str]:
    """Cache-Control for browsers/CDN and CDN-Cache-Control for the edge"""
    directives = ["public" if public else "private", f"s-maxage={s_maxage}"]
    if swr:
        directives.append(f"stale-while-revalidate={swr}")

    return {
        "Cache-Control": ", ".join(directives),
        "CDN-Cache-Control": f"max-age={s_maxage}",
    }


def cors_public() -> dict[str, str]:
    """The data routes are embedded by third-party pages; any origin may read them"""
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }


def cached_json_response(result: CacheResult, window: CacheWindow) -> JSONResponse:
    """
    Serve an orchestrator result.

    Fresh results use the route's window; degraded ones get a short window
    so the CDN retries soon.
    """
    if result.cache_status == CacheStatus.ERROR:
        window = ERROR_WINDOW
    elif result.is_degraded:
        window = DEGRADED_WINDOW

    headers = {
        **cache_headers(window.s_maxage, window.swr),
        **cors_public(),
        "X-Cache": result.cache_status.value,
    }

    if result.cache_status == CacheStatus.HIT_STALE:
        headers["X-Degraded"] = "true"
        headers["Warning"] = '110 - "Response is stale"'

    return JSONResponse(content=result.value, headers=headers)


def error_payload_response(payload: Any) -> JSONResponse:
    """HTTP 200 with an empty payload after an unexpected failure"""
    return cached_json_response(
        CacheResult(value=payload, cache_status=CacheStatus.ERROR),
        ERROR_WINDOW,
    )


def invalid_params_response(code: str, message: str, details: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "ok": False,
            "error": {
                "code": code,
                "message": message,
                "details": details,
            },
        },
        headers=cors_public(),
    )


def sanitize_validation_errors(errors: list[dict]) -> list[dict]:
    """
    Strip 'input' (may echo request data) and 'ctx' (may hold exception
    objects that are not JSON serialisable) from pydantic errors.
    """
    return [{k: v for k, v in err.items() if k not in ("input", "ctx", "url")} for err in errors]


def preflight_response() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=cors_public())
