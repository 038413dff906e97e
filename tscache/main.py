# tscache/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tscache.cache import ExpiringCache
from tscache.config import load_settings
from tscache.data_client import fetch_series
from tscache.errors import envelope_from_http_exception
from tscache.logging_conf import setup_logging

# --- Observability ---
from tscache.observability import metrics_endpoint, timing_middleware

# --- Routers ---
from tscache.routes_timeseries import router as timeseries_router
from tscache.schemas import ErrorCode, ErrorDetail, ErrorResponse, HealthResponse, VersionResponse
from tscache.utils import utc_now_iso
from tscache.version import SERVICE_VERSION, service_version_payload

logger = logging.getLogger("tscache.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    cache = ExpiringCache(
        ttl_s=settings.ttl_s,
        refresh_interval_s=settings.refresh_interval_s,
        fetch_timeout_s=settings.fetch_timeout_s,
        refresh_jitter_s=settings.refresh_jitter_s,
    )
    app.state.settings = settings
    app.state.cache = cache
    app.state.fetcher = partial(fetch_series, provider=settings.provider, api_key=settings.api_key)

    cache.start()
    logger.info("tscache ready (provider=%s)", settings.provider)
    try:
        yield
    finally:
        await cache.stop()


# --- App ---
setup_logging()
app = FastAPI(title="tscache", version=SERVICE_VERSION, lifespan=lifespan)

# --- Include routers ---
app.include_router(timeseries_router)

# --- Observability ---
app.middleware("http")(timing_middleware)


# --- Error envelopes ---
# Registered on the Starlette base so routing 404/405 get the envelope too
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    body = envelope_from_http_exception(exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s", request.url.path)
    body = ErrorResponse(
        error=ErrorDetail(code=ErrorCode.INTERNAL_ERROR, message="Internal server error")
    )
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


# --- Utility endpoints ---


@app.get("/health", response_model=HealthResponse)
def health(request: Request):
    cache: ExpiringCache = request.app.state.cache
    return HealthResponse(
        status="ok" if cache.running else "degraded",
        as_of=utc_now_iso(),
        cache_entries=len(cache),
        refresh_running=cache.running,
    )


@app.get("/version", response_model=VersionResponse)
def version(request: Request):
    p = service_version_payload()
    return VersionResponse(
        service=p["service"],
        service_version=p["service_version"],
        provider=request.app.state.settings.provider,
    )


@app.get("/metrics")
def metrics():
    return metrics_endpoint()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = load_settings()
    uvicorn.run("tscache.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
