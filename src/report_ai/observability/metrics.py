from __future__ import annotations

"""Prometheus metrics for the report AI engine.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for provider calls and field analysis outcomes.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "report_ai_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

PROVIDER_REQUESTS = Counter(
    "report_ai_provider_requests_total",
    "Provider calls by provider, operation and outcome",
    labelnames=("provider", "operation", "outcome"),
)

# Model calls are far slower than HTTP handlers
PROVIDER_LATENCY = Histogram(
    "report_ai_provider_latency_seconds",
    "Provider call latency in seconds",
    labelnames=("provider", "operation"),
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0),
)

ANALYSIS_OUTCOMES = Counter(
    "report_ai_analysis_outcomes_total",
    "Field analysis outcomes",
    labelnames=("mode", "outcome"),
)


def observe_provider_call(provider: str, operation: str, outcome: str, elapsed: float) -> None:
    try:
        PROVIDER_REQUESTS.labels(provider=provider, operation=operation, outcome=outcome).inc()
        PROVIDER_LATENCY.labels(provider=provider, operation=operation).observe(elapsed)
    except Exception:
        # Metrics must never break a provider call
        pass


def record_analysis_outcome(mode: str, outcome: str) -> None:
    try:
        ANALYSIS_OUTCOMES.labels(mode=mode, outcome=outcome).inc()
    except Exception:
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths to a coarse label (first two segments)."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
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
        except Exception:
            pass
        return response

    return middleware
