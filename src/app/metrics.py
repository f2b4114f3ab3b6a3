from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

from src.app.settings import settings

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
SEARCH_COUNT = Counter(
    "retrieval_searches_total",
    "Search requests by strategy and outcome",
    ["strategy", "outcome"],
)
SEARCH_DEGRADED = Counter(
    "retrieval_degraded_total",
    "Searches served in degraded mode",
    ["strategy"],
)
SEARCH_LATENCY = Histogram(
    "retrieval_search_duration_seconds",
    "Search latency in seconds",
    ["strategy"],
)
CORPUS_VERSION = Gauge(
    "retrieval_corpus_version",
    "Corpus version currently served",
)


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled:
        return await call_next(request)
    if request.url.path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        duration = time.monotonic() - start
        # Label by route template rather than the raw path.
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(request.method, path, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, path).observe(duration)


def record_search(strategy: str, outcome: str, duration: float, degraded: bool = False) -> None:
    if not settings.metrics_enabled:
        return
    SEARCH_COUNT.labels(strategy, outcome).inc()
    SEARCH_LATENCY.labels(strategy).observe(duration)
    if degraded:
        SEARCH_DEGRADED.labels(strategy).inc()


def record_corpus_version(version: int) -> None:
    if settings.metrics_enabled:
        CORPUS_VERSION.set(version)


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
