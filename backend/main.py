"""
ElPortal Data API

FastAPI entry point: logging setup, the app lifespan that wires Redis, the
upstream client and the pricing services, operational endpoints and the
public data routers.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import structlog

from api.responses import invalid_params_response, sanitize_validation_errors
from config.database import db_manager
from config.settings import settings
from integrations.energidata import create_services_from_settings

_started_at = time.time()


def configure_logging() -> None:
    """JSON logs through stdlib logging; request-scoped context via contextvars"""
    logging.basicConfig(format="%(message)s", level=settings.log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
    ]
    if not settings.is_production:
        # Logger names and positional args help locally; skipped in prod to save cycles
        processors += [
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
        ]
    processors += [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


def init_sentry() -> None:
    """Error reporting, only when SENTRY_DSN is set"""
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
    except ImportError:
        logger.warning("sentry_sdk_missing")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
    )
    logger.info("sentry_enabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("startup_begin", environment=settings.environment, version=settings.app_version)

    # Never fatal: without Redis every route runs on its memory cache alone
    await db_manager.initialize()
    redis = await db_manager.get_redis_client()

    app.state.pricing_services = create_services_from_settings(settings, redis_client=redis)

    if settings.sentry_dsn:
        init_sentry()

    logger.info("startup_complete", durable_cache=redis is not None)

    yield

    logger.info("shutdown_begin")
    try:
        await app.state.pricing_services.close()
    finally:
        await db_manager.close()
    logger.info("shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Cached Danish grid tariffs, provider price lists and spot prices",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    lifespan=lifespan,
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

# Public read-only data; the routes also set their own CORS headers for CDN caching
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# Whole-country price lists run to several hundred KB
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every log line and response with a request ID"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    if not settings.is_production:
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"

    slow_or_failed = elapsed > 1.0 or response.status_code >= 400
    if slow_or_failed or not settings.is_production:
        logger.info(
            "request_completed",
            method=request.method,
            status_code=response.status_code,
            x_cache=response.headers.get("X-Cache"),
            duration_ms=round(elapsed * 1000, 2),
        )

    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Bad parameters get the same 400 envelope the data routes use"""
    errors = sanitize_validation_errors(exc.errors())
    logger.warning("request_validation_failed", errors=errors)
    return invalid_params_response("INVALID_PARAMS", "Invalid request parameters", errors)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", method=request.method, error=str(exc), exc_info=exc)

    detail = "Internal server error" if settings.is_production else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"ok": False, "error": {"code": "INTERNAL_ERROR", "message": detail}},
    )


# ============================================================================
# OPERATIONAL ENDPOINTS
# ============================================================================

@app.get("/health", tags=["Health"])
async def health_check():
    """Process is up; does not touch Redis or upstream"""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": round(time.time() - _started_at, 2),
        "durable_cache": "configured" if settings.redis_url else "not_configured",
    }


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive"}


@app.get("/health/ready", tags=["Health"])
async def readiness_check(request: Request):
    """Services wired, and Redis answering when one is configured"""
    services = getattr(request.app.state, "pricing_services", None)
    checks = {"services": services is not None, "durable_cache": True}

    if services is not None and services.durable.is_configured:
        checks["durable_cache"] = await services.durable.ping()

    ready = all(checks.values())
    if not ready:
        logger.warning("readiness_failed", checks=checks)

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not ready", "checks": checks},
    )


@app.get("/", tags=["Root"])
async def root():
    info = {
        "name": settings.app_name,
        "version": settings.app_version,
        "routes": [
            f"{settings.api_prefix}/tariffs",
            f"{settings.api_prefix}/pricelists",
            f"{settings.api_prefix}/electricity-prices",
            f"{settings.api_prefix}/health",
        ],
        "metrics": "/metrics",
    }
    if not settings.is_production:
        info["docs"] = "/docs"
    return info


app.mount("/metrics", make_asgi_app())


# ============================================================================
# DATA ROUTES
# ============================================================================

from api.v1 import (  # noqa: E402
    electricity_prices_router,
    health_router,
    pricelists_router,
    tariffs_router,
)

for router in (tariffs_router, pricelists_router, electricity_prices_router, health_router):
    app.include_router(router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
