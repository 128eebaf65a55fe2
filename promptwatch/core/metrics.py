"""Prometheus metrics.

Engine counters are incremented by the dispatcher and the provider adapters.
HTTP metrics are labelled by route template (``/api/v1/executions/{execution_id}``)
so record ids never become label values.
"""

import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

APP_INFO = Info("promptwatch", "promptwatch build info")
APP_INFO.info({"version": "1.0.0"})

# --- Execution engine ---

EXECUTION_RUNS = Counter(
    "execution_runs_total",
    "run_all / run_single invocations by trigger and outcome",
    ["trigger", "status"],
)

PROMPT_EXECUTIONS = Counter(
    "prompt_executions_total",
    "Prompt executions by terminal status (completed, failed, skipped)",
    ["status"],
)

PROVIDER_CALL_DURATION = Histogram(
    "provider_call_duration_seconds",
    "Language-model provider call duration in seconds",
    ["family", "outcome"],
    buckets=[0.5, 1, 2.5, 5, 10, 20, 30, 60, 120],
)

# --- HTTP ---

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "route", "status"],
)

HTTP_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds (time to response start for streams)",
    ["method", "route"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)

_UNMATCHED = "unmatched"


def route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or _UNMATCHED


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # the route is only known after routing has run
        route = route_template(request)
        HTTP_REQUESTS.labels(method=request.method, route=route, status=str(response.status_code)).inc()
        HTTP_DURATION.labels(method=request.method, route=route).observe(elapsed)
        return response


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
