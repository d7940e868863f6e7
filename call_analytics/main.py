"""FastAPI entrypoint for the analytics API."""

import logging
from datetime import datetime, timezone
from time import monotonic
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict, Field

from call_analytics.config import get_settings
from call_analytics.tracing import init_tracing, instrument_app, shutdown_tracing
from call_analytics.tracker import (
    CallStoreUnavailableError,
    CallTracker,
    InvalidCallKeyError,
    create_call_tracker,
)

MAX_ENDPOINT_LENGTH = 2048
MAX_METHOD_LENGTH = 32
ANALYTICS_PATH_PREFIX = "/api/analytics"

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
app = FastAPI(title=settings.app_name, version=settings.app_version)
instrument_app(app)
started_at_monotonic = monotonic()
request_logger = logging.getLogger("call_analytics.request")
store_logger = logging.getLogger("call_analytics.store")
app.state.tracker = create_call_tracker(
    redis_url=settings.redis_url,
    socket_timeout_seconds=settings.redis_socket_timeout_seconds,
    connect_timeout_seconds=settings.redis_connect_timeout_seconds,
    ledger_max_entries=settings.ledger_max_entries,
    recent_timestamps_limit=settings.recent_timestamps_limit,
)


class TrackRequest(BaseModel):
    """Body of a track call."""

    model_config = ConfigDict(extra="ignore")

    endpoint: str = Field(min_length=1, max_length=MAX_ENDPOINT_LENGTH)
    method: str = Field(min_length=1, max_length=MAX_METHOD_LENGTH)


def get_call_tracker(request: Request) -> CallTracker:
    """Return the tracker bound to the running app."""

    return request.app.state.tracker


def _store_unavailable(exc: CallStoreUnavailableError) -> HTTPException:
    store_logger.error("store_unavailable error=%s", exc.__cause__ or exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Analytics store is unavailable",
    )


def _route_template(request: Request) -> str | None:
    route = request.scope.get("route")
    if isinstance(route, APIRoute):
        return route.path
    return None


@app.on_event("startup")
async def startup_event() -> None:
    init_tracing(
        service_name=settings.otel_service_name,
        service_version=settings.app_version,
        endpoint=settings.otlp_endpoint,
        enabled=settings.tracing_enabled,
    )
    try:
        await app.state.tracker.ping()
    except CallStoreUnavailableError as exc:
        store_logger.error("store_connect_failed url=%s error=%s", settings.redis_url, exc.__cause__)
    else:
        store_logger.info("store_connected url=%s", settings.redis_url)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await app.state.tracker.close()
    shutdown_tracing()


@app.middleware("http")
async def self_tracking_middleware(request: Request, call_next: Any) -> Response:
    response = await call_next(request)
    if not settings.self_tracking_enabled:
        return response

    template = _route_template(request)
    if template is None or template.startswith(ANALYTICS_PATH_PREFIX):
        return response

    try:
        await request.app.state.tracker.record(template, request.method.upper())
    except CallStoreUnavailableError as exc:
        # Instrumentation only; the response has already been produced.
        store_logger.warning(
            "self_tracking_failed method=%s route=%s error=%s",
            request.method.upper(),
            template,
            exc.__cause__ or exc,
        )
    return response


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next: Any) -> Response:
    started = monotonic()
    path = request.url.path
    method = request.method.upper()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = int((monotonic() - started) * 1000)
        request_logger.exception(
            "request method=%s path=%s status=%s latency_ms=%s",
            method,
            path,
            500,
            latency_ms,
        )
        raise

    latency_ms = int((monotonic() - started) * 1000)
    request_logger.info(
        "request method=%s path=%s status=%s latency_ms=%s",
        method,
        path,
        response.status_code,
        latency_ms,
    )
    return response


@app.get("/", tags=["meta"])
async def root() -> dict[str, str]:
    return {"message": "Analytics API - Tracks API call statistics using Redis/Valkey"}


@app.post(f"{ANALYTICS_PATH_PREFIX}/track", tags=["analytics"])
async def track_call(
    payload: TrackRequest,
    tracker: CallTracker = Depends(get_call_tracker),
) -> dict[str, Any]:
    try:
        result = await tracker.record(payload.endpoint, payload.method)
    except InvalidCallKeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=str(exc),
        ) from exc
    except CallStoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return result.as_dict()


@app.get(ANALYTICS_PATH_PREFIX, tags=["analytics"])
async def all_analytics(
    tracker: CallTracker = Depends(get_call_tracker),
) -> dict[str, dict[str, dict[str, int]]]:
    try:
        return await tracker.query_all()
    except CallStoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc


@app.get(f"{ANALYTICS_PATH_PREFIX}/{{endpoint:path}}", tags=["analytics"])
async def endpoint_analytics(
    endpoint: str,
    tracker: CallTracker = Depends(get_call_tracker),
) -> dict[str, Any]:
    try:
        stats = await tracker.query_endpoint(endpoint)
    except CallStoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return {
        "endpoint": endpoint,
        "statistics": {method: method_stats.as_dict() for method, method_stats in stats.items()},
    }


@app.delete(f"{ANALYTICS_PATH_PREFIX}/{{endpoint:path}}", tags=["analytics"])
async def clear_endpoint_analytics(
    endpoint: str,
    tracker: CallTracker = Depends(get_call_tracker),
) -> dict[str, Any]:
    try:
        keys_deleted = await tracker.clear(endpoint)
    except CallStoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return {"endpoint": endpoint, "keysDeleted": keys_deleted}


@app.get("/api/health", tags=["health"])
async def basic_health(
    tracker: CallTracker = Depends(get_call_tracker),
) -> dict[str, int | str]:
    try:
        await tracker.ping()
    except CallStoreUnavailableError:
        store_status = "unavailable"
    else:
        store_status = "ok"

    return {
        "status": "healthy" if store_status == "ok" else "unhealthy",
        "store": store_status,
        "version": settings.app_version,
        "uptime_seconds": int(monotonic() - started_at_monotonic),
        "checked_at": datetime.now(tz=timezone.utc).isoformat(),
    }
