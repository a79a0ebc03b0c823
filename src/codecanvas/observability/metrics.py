from __future__ import annotations

"""Prometheus metrics for the CodeCanvas service.

Adds an HTTP middleware that records request latency per method/path/status,
plus pipeline counters for builds, installs, cache lookups and live sessions.
"""

import logging
import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

LOG = logging.getLogger("codecanvas.metrics")

REQUEST_LATENCY = Histogram(
    "codecanvas_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

BUILD_DURATION = Histogram(
    "codecanvas_build_seconds",
    "Bundler run time in seconds",
    labelnames=("outcome",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

PACKAGE_INSTALLS = Counter(
    "codecanvas_package_installs_total",
    "Package manager batch invocations",
    labelnames=("outcome",),
)

CACHE_LOOKUPS = Counter(
    "codecanvas_cache_lookups_total",
    "Content-addressed cache lookups by result",
    labelnames=("result",),
)

ACTIVE_SESSIONS = Gauge(
    "codecanvas_active_sessions",
    "Stream sessions currently live",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /artifacts/{id}) to the top-level segment."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        if segs[1] == "api" and len(segs) > 2:
            return "/api/" + segs[2]
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError as exc:
            LOG.debug("metrics_observe_failed", extra={"err": str(exc)})
        return response

    return middleware
