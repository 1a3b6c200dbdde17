"""HTTP middleware: request metrics, correlation ids, server spans and access logs.

Coconut calls the notification and upload endpoints directly, so their
requests are traced and logged like any API call. Health and metrics probes
are left out of the access log.
"""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from coconut_jobs.core.logging import clear_correlation_id, get_correlation_id, set_correlation_id
from coconut_jobs.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from coconut_jobs.core.tracing import add_span_attributes, create_span, record_exception

CORRELATION_ID_HEADER = "X-Correlation-ID"
UNLOGGED_PATHS = frozenset(("/health", "/metrics"))

_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")

request_logger = logging.getLogger("coconut_jobs.requests")


def route_template(request: Request) -> str:
    """Path template of the matched route, e.g. ``/api/v1/coconut/jobs/{job_id}``.

    Unmatched requests fall back to the raw path with numeric segments
    replaced, which keeps metric label values bounded.
    """
    route = request.scope.get("route")
    template = getattr(route, "path_format", None)
    if template:
        return template
    return _NUMERIC_SEGMENT.sub("/{id}", request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests and records their duration per route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=route_template(request))
        in_progress.inc()

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_progress.dec()
            endpoint = route_template(request)
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request correlation id to the logging context and echoes it back."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """Runs each request inside a server span named after its route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with create_span(
            f"{request.method} {request.url.path}",
            attributes={
                "http.method": request.method,
                "http.target": request.url.path,
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise

            route = route_template(request)
            span.update_name(f"{request.method} {route}")
            add_span_attributes({
                "http.route": route,
                "http.status_code": response.status_code,
                "coconut.volume": request.query_params.get("volume"),
            })
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per completed or failed request."""

    def __init__(self, app: ASGIApp, log_request_body: bool = False):
        super().__init__(app)
        self.log_request_body = log_request_body

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        context = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        if self.log_request_body and request.headers.get("content-type") == "application/json":
            context["body"] = (await request.body()).decode("utf-8", errors="replace")

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                "Request failed",
                extra={
                    **context,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        request_logger.info(
            "Request completed",
            extra={
                **context,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return response
