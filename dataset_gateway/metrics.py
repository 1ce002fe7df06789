"""Prometheus metrics for the dataset gateway.

Labels are kept low-cardinality: route templates and error codes only,
never access keys, requesters or dataset ids.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from .config import env_bool


HTTP_REQUESTS_TOTAL = Counter(
    "dsg_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "dsg_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
ACCESS_OPERATIONS_TOTAL = Counter(
    "dsg_access_operations_total",
    "Gateway operations by outcome",
    ["operation", "outcome"],
)
DENIALS_TOTAL = Counter(
    "dsg_denials_total",
    "Rejected gateway operations by error code",
    ["code"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "dsg_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
GRANTS_EVICTED_TOTAL = Counter(
    "dsg_grants_evicted_total",
    "Expired grants removed by the sweeper",
)
ACTIVE_GRANTS = Gauge(
    "dsg_active_grants",
    "Grants currently held by the token store",
)


def record_operation(operation: str, outcome: str) -> None:
    ACCESS_OPERATIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_denial(code: str) -> None:
    DENIALS_TOTAL.labels(code=str(code)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def record_evicted(count: int) -> None:
    if count > 0:
        GRANTS_EVICTED_TOTAL.inc(count)


def set_active_grants(count: int) -> None:
    ACTIVE_GRANTS.set(float(count))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not env_bool("DSG_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or "<unmatched>"
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
