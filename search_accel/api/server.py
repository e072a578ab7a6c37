"""
FastAPI server for the search acceleration layer.

Endpoints:
    GET    /cache-check    cheap "is this query cached?" probe
    GET    /prefetch       fire-and-forget warm-up (202)
    POST   /pre-render     prepare results before a redirect (202)
    POST   /tabs/preload   warm the tabs the user is likely to open next (202)
    GET    /search         read-through search and tab requests
    GET    /suggestions    read-through query suggestions
    DELETE /cache          pattern / query / tab invalidation
    GET    /cache/stats    store, popularity and hit-rate statistics
    GET    /cache/metadata metadata for one key
    GET    /health, /metrics
"""
import asyncio
import os
import time
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from search_accel import __version__
from search_accel.api.models import (
    CacheCheckResponse,
    HealthResponse,
    InvalidateResponse,
    PrefetchResponse,
    PreRenderRequest,
    PreRenderResponse,
    TabPreloadRequest,
    TabPreloadResponse,
)
from search_accel.cache.keys import TAB_PATTERN, normalize_query, query_pattern
from search_accel.cache.policy import TTLPolicy
from search_accel.cache.popularity import PopularityTracker
from search_accel.cache.store import CacheStore
from search_accel.core.config import AccelConfig, get_config
from search_accel.metrics import MetricsCollector, metrics_collector, record_request_metrics
from search_accel.origin import OriginClient, OriginError
from search_accel.prefetch import PrefetchWorker
from search_accel.probe import CacheProbe
from search_accel.service import SearchService, make_cache_event_recorder
from search_accel.tabs import TabClassifier, TabRuleSet
from search_accel.utils.logger import get_logger

logger = get_logger("api.server")


@dataclass
class Accelerator:
    """Everything a request handler needs, built once per process."""
    config: AccelConfig
    store: CacheStore
    popularity: PopularityTracker
    ttl_policy: TTLPolicy
    classifier: TabClassifier
    origin: OriginClient
    service: SearchService
    probe: CacheProbe
    prefetch: PrefetchWorker
    metrics: MetricsCollector


def build_accelerator(
    config: Optional[AccelConfig] = None,
    store: Optional[CacheStore] = None,
    origin_transport: Optional[httpx.AsyncBaseTransport] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Accelerator:
    """Wire the cache, policy, origin client and workers together."""
    config = config or get_config()
    metrics = metrics or metrics_collector
    popularity = PopularityTracker(max_entries=config.popularity_max_entries)
    recorder = make_cache_event_recorder(metrics, popularity)

    if store is None:
        store = CacheStore.from_config(config, on_event=recorder)
    else:
        store.on_event = recorder

    ttl_policy = TTLPolicy(popularity, config)
    classifier = TabClassifier(TabRuleSet.from_dict(config.tab_rules))
    origin = OriginClient.from_config(config, transport=origin_transport)
    service = SearchService(store, origin, ttl_policy, classifier=classifier, config=config)

    return Accelerator(
        config=config,
        store=store,
        popularity=popularity,
        ttl_policy=ttl_policy,
        classifier=classifier,
        origin=origin,
        service=service,
        probe=CacheProbe(store, config),
        prefetch=PrefetchWorker(service, metrics=metrics, config=config),
        metrics=metrics,
    )


# Global accelerator instance
_accelerator: Optional[Accelerator] = None


def get_accelerator() -> Accelerator:
    global _accelerator
    if _accelerator is None:
        _accelerator = build_accelerator()
    return _accelerator


def set_accelerator(accelerator: Optional[Accelerator]) -> None:
    global _accelerator
    _accelerator = accelerator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build components on startup; let pending prefetches finish on shutdown."""
    accelerator = get_accelerator()
    logger.info(
        f"Search accelerator started (cache provider: {accelerator.store.provider}, "
        f"origin: {accelerator.config.origin_base_url})"
    )
    yield
    try:
        await asyncio.wait_for(accelerator.prefetch.drain(), timeout=accelerator.config.prefetch_timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Shutting down with {accelerator.prefetch.pending} prefetches still running")


app = FastAPI(
    title="Search Accelerator API",
    description="Cache-first acceleration layer in front of a slow site-search backend",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Cache-Status", "X-Cache-Type", "X-Cache-Tab-ID", "X-Cache-TTL", "X-Cache-Check-Time"],
)


# ---------------------------------------------------------------------------
# Latency logging middleware
# Logs every non-OPTIONS request with method, path, status, and duration_ms,
# and records the sample in the metrics collector.
# ---------------------------------------------------------------------------

class LatencyLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS":
            return await call_next(request)
        t0 = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - t0) * 1000, 1)
        path = request.url.path

        if path in ("/search", "/suggestions"):
            category = "read_through"
        elif path in ("/cache-check",):
            category = "probe"
        elif path in ("/prefetch", "/pre-render", "/tabs/preload"):
            category = "warmup"
        elif path.startswith("/cache"):
            category = "admin"
        else:
            category = "other"

        logger.info(
            "[LATENCY] %s %s -> %d  %.1fms  [%s] cache=%s",
            request.method, path, response.status_code, duration_ms, category,
            response.headers.get("X-Cache-Status", "-"),
        )
        record_request_metrics(path, duration_ms, is_error=response.status_code >= 500)
        return response


app.add_middleware(LatencyLoggingMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed requests (missing query, bad ttl) are client errors."""
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unhandled exceptions and return 500."""
    err_msg = str(exc)
    logger.error("Unhandled exception: %s\n%s", err_msg, traceback.format_exc())
    is_dev = os.getenv("ENV", "development").lower() in ("development", "dev", "")
    detail = err_msg if is_dev else "Internal server error"
    return JSONResponse(
        status_code=500,
        content={"detail": detail, "type": type(exc).__name__},
    )


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _body_response(body: Any, content_type: Optional[str], status_code: int, headers: Dict[str, str]) -> Response:
    if isinstance(body, (dict, list)):
        return JSONResponse(status_code=status_code, content=body, headers=headers)
    return Response(
        content=body,
        status_code=status_code,
        media_type=content_type or "text/html; charset=utf-8",
        headers=headers,
    )


#
# Health Check Endpoints
#

@app.get("/")
def root():
    return {
        "service": "Search Accelerator",
        "version": __version__,
        "status": "operational",
    }


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Cache connectivity check (healthy / degraded / offline)."""
    cache_health = get_accelerator().store.health()
    status = "healthy" if cache_health["status"] == "healthy" else "degraded"
    return HealthResponse(status=status, version=__version__, cache=cache_health)


@app.get("/metrics")
def get_metrics():
    """Latency percentiles, per-category cache hit rates and prefetch outcomes."""
    return get_accelerator().metrics.get_summary()


#
# Probe and warm-up
#

@app.get("/cache-check")
async def cache_check(
    query: Optional[str] = None,
    collection: Optional[str] = None,
    profile: Optional[str] = None,
):
    """
    Report whether search results for a query are cached.

    200 when cached (with remaining TTL), 404 when not, 400 when the
    query is missing or shorter than the probe minimum.
    """
    accelerator = get_accelerator()
    start = time.perf_counter()
    normalized = normalize_query(query)

    if len(normalized) < accelerator.config.probe_min_query_length:
        body = CacheCheckResponse(exists=False, timestamp=_timestamp(), error="Query too short")
        return JSONResponse(status_code=400, content=body.model_dump(by_alias=True))

    result = await accelerator.probe.probe(normalized, collection, profile)
    headers = {
        "X-Cache-Check-Time": f"{(time.perf_counter() - start) * 1000:.1f}",
        "X-Cache-Status": "HIT" if result.exists else "MISS",
    }
    if result.ttl_remaining is not None:
        headers["X-Cache-TTL"] = str(result.ttl_remaining)

    body = CacheCheckResponse(
        exists=result.exists,
        cache_key=result.cache_key,
        ttl=result.ttl_remaining,
        timestamp=_timestamp(),
    )
    return JSONResponse(
        status_code=200 if result.exists else 404,
        content=body.model_dump(by_alias=True),
        headers=headers,
    )


@app.get("/prefetch")
async def prefetch(
    request: Request,
    query: Optional[str] = None,
    collection: Optional[str] = None,
    profile: Optional[str] = None,
    ttl: Optional[int] = Query(default=None, ge=1),
    sessionId: Optional[str] = None,
):
    """Accept a prefetch and return 202 immediately; the fetch runs in the background."""
    if not query or not query.strip():
        return JSONResponse(status_code=400, content={"error": "Query parameter is required"})

    ack = get_accelerator().prefetch.schedule(
        query,
        collection=collection,
        profile=profile,
        session_id=sessionId,
        ttl=ttl,
        client_ip=_client_ip(request),
    )
    body = PrefetchResponse(status=ack.status, cache_key=ack.cache_key, query=ack.query, message=ack.message)
    return JSONResponse(status_code=202, content=body.model_dump(by_alias=True))


@app.post("/pre-render")
async def pre_render(request: Request, payload: PreRenderRequest):
    """Prepare results for a query the user is about to be redirected to."""
    ack = get_accelerator().prefetch.pre_render(
        payload.query,
        collection=payload.collection,
        profile=payload.profile,
        session_id=payload.session_id,
        client_ip=_client_ip(request),
    )
    body = PreRenderResponse(
        status=ack.status,
        accepted=ack.accepted,
        cache_key=ack.cache_key,
        query=ack.query,
        session_id=ack.session_id,
    )
    return JSONResponse(status_code=202, content=body.model_dump(by_alias=True))


@app.post("/tabs/preload")
async def preload_tabs(payload: TabPreloadRequest):
    """Warm the listed tabs, or the tabs predicted from the current one."""
    accelerator = get_accelerator()
    tabs = payload.tabs
    if payload.current_tab:
        tabs = accelerator.classifier.predict_next_tabs(payload.current_tab, tabs or accelerator.config.popular_tabs)

    acks = accelerator.prefetch.preload_tabs(
        payload.query,
        tabs,
        collection=payload.collection,
        profile=payload.profile,
        session_id=payload.session_id,
    )
    body = TabPreloadResponse(status="accepted", scheduled=[ack.cache_key for ack in acks])
    return JSONResponse(status_code=202, content=body.model_dump(by_alias=True))


#
# Read-through
#

@app.get("/search")
async def search(request: Request):
    """Search and tab requests, served from cache when possible."""
    params = dict(request.query_params)
    if not (params.get("query") or "").strip():
        return JSONResponse(status_code=400, content={"error": "Query parameter is required"})

    try:
        result = await get_accelerator().service.search(params, client_ip=_client_ip(request))
    except OriginError as e:
        logger.error(f"Search failed for '{params.get('query')}': {e}")
        return JSONResponse(
            status_code=502,
            content={"error": "Failed to fetch search results", "detail": str(e)},
            headers={"X-Cache-Status": "ERROR"},
        )

    return _body_response(result.body, result.content_type, 200, result.cache_headers())


@app.get("/suggestions")
async def suggestions(
    query: Optional[str] = None,
    collection: Optional[str] = None,
    profile: Optional[str] = None,
):
    """Query suggestions, cached for a short content TTL."""
    accelerator = get_accelerator()
    if len(normalize_query(query)) < accelerator.config.suggestion_min_query_length:
        return JSONResponse(status_code=200, content=[])

    try:
        result = await accelerator.service.suggestions(query, collection, profile)
    except OriginError as e:
        logger.warning(f"Suggestions failed for '{query}': {e}")
        return JSONResponse(status_code=200, content=[], headers={"X-Cache-Status": "ERROR"})

    return _body_response(result.body, result.content_type or "application/json", 200, result.cache_headers())


#
# Cache administration
#

@app.delete("/cache", response_model=InvalidateResponse)
def invalidate_cache(
    pattern: Optional[str] = None,
    query: Optional[str] = None,
    tabs: bool = False,
):
    """Delete by glob pattern (``*`` wildcard), by query, or every tab entry."""
    service = get_accelerator().service
    if pattern:
        return InvalidateResponse(pattern=pattern, deleted=service.clear_pattern(pattern))
    if query and normalize_query(query):
        return InvalidateResponse(pattern=query_pattern(query), deleted=service.clear_query(query))
    if tabs:
        return InvalidateResponse(pattern=TAB_PATTERN, deleted=service.clear_tabs())
    return JSONResponse(status_code=400, content={"error": "Provide pattern, query or tabs=true"})


@app.get("/cache/stats")
def cache_stats():
    """Store key counts, popularity tiers and cache hit rates."""
    accelerator = get_accelerator()
    config = accelerator.config
    return {
        "store": accelerator.store.stats(),
        "health": accelerator.store.health(),
        "popularity": accelerator.popularity.tier_counts(
            config.popular_threshold, config.high_volume_threshold
        ),
        "hit_rates": accelerator.metrics.get_cache_summary(),
        "prefetch": dict(accelerator.metrics.prefetch_counts),
        "timestamp": _timestamp(),
    }


@app.get("/cache/metadata")
def cache_metadata(key: str):
    """Metadata (format, timestamps, TTL) for one cache key, without the payload."""
    metadata = get_accelerator().store.get_metadata(key)
    if metadata is None:
        return JSONResponse(status_code=404, content={"error": "Key not found", "key": key})
    return metadata


def main():
    import uvicorn

    uvicorn.run(
        "search_accel.api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
