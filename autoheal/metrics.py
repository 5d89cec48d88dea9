"""
Prometheus metrics for the auto-heal engine.
"""

import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.requests import Request
from starlette.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

# =============================================================================
# METRICS DEFINITIONS
# =============================================================================

autoheal_cycles_total = Counter(
    "autoheal_cycles_total",
    "Total reconciliation cycles by result",
    ["result"],
)

autoheal_cycle_duration_seconds = Histogram(
    "autoheal_cycle_duration_seconds",
    "Duration of reconciliation cycles in seconds",
)

autoheal_commands_dispatched_total = Counter(
    "autoheal_commands_dispatched_total",
    "Commands written to the queue, by action and result",
    ["action", "result"],
)

autoheal_records_skipped_total = Counter(
    "autoheal_records_skipped_total",
    "Problem records not remediated, by reason",
    ["reason"],
)

autoheal_retries_total = Counter(
    "autoheal_retries_total",
    "Commands re-armed by the retry scheduler",
    ["trigger"],
)

autoheal_commands_exhausted_total = Counter(
    "autoheal_commands_exhausted_total",
    "Commands that reached their retry cap",
)

autoheal_notifications_total = Counter(
    "autoheal_notifications_total",
    "Run notifications emitted, by severity",
    ["severity"],
)

autoheal_store_available = Gauge(
    "autoheal_store_available",
    "Durable store reachability (1=up, 0=down)",
)

autoheal_info = Info(
    "autoheal",
    "Auto-heal engine instance metadata",
)

# HTTP request metrics for middleware
http_requests_total = Counter(
    "autoheal_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "autoheal_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

class MetricsMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware that tracks request count and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        http_requests_total.labels(method=method, path=path, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(duration)

        return response


def metrics_middleware(app):
    """Add Prometheus metrics middleware to a FastAPI app."""
    app.add_middleware(MetricsMiddleware)


# =============================================================================
# RESPONSE HELPER
# =============================================================================

def get_metrics_response() -> Response:
    """Return Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
