"""Prometheus metrics for the gateway."""

import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from signal_gateway import __version__

# --- Metrics ---

APP_INFO = Info("app", "Signal gateway application info")
APP_INFO.info({"version": __version__, "name": "signal_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

# Model label for models outside the shared tier; own-key callers pick those freely
OWN_KEY_MODEL_LABEL = "own_key"

UPSTREAM_CALLS = Counter(
    "gateway_upstream_calls_total",
    "Upstream model calls by final outcome (after transport retries)",
    ["model", "outcome"],
)

FALLBACKS = Counter(
    "gateway_fallbacks_total",
    "Times the fallback chain advanced past a model",
)

BREAKER_OPENED = Counter(
    "gateway_breaker_opened_total",
    "Circuit breaker open transitions",
    ["model"],
)

REJECTIONS = Counter(
    "gateway_rejections_total",
    "Requests rejected by the gateway before or after upstream",
    ["code"],
)
# --- Middleware ---

# Anything else (scanners, typos) is bucketed to keep label cardinality flat
_KNOWN_PATHS = frozenset({"/api/chat", "/api/health"})


def _path_label(path: str) -> str:
    return path if path in _KNOWN_PATHS else "other"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _path_label(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
