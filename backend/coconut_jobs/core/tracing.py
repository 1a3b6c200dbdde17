"""OpenTelemetry tracing for API requests, Coconut API calls and workers."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "coconut_jobs"

_tracer: Optional[trace.Tracer] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install the tracer provider used by :func:`create_span`.

    Args:
        service_name: Reported ``service.name``
        service_version: Reported ``service.version``
        environment: Reported ``deployment.environment``
        enable_console_export: Print finished spans, for local debugging
    """
    global _tracer

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(TRACER_NAME, service_version)
    logger.info(
        "Tracing initialized",
        extra={"service_name": service_name, "console_export": enable_console_export},
    )
    return _tracer


def _span_context_id(attribute: str, width: int) -> Optional[str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(getattr(context, attribute), f"0{width}x")


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, if any."""
    return _span_context_id("trace_id", 32)


def get_span_id() -> Optional[str]:
    """Hex span id of the active span, if any."""
    return _span_context_id("span_id", 16)


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Run the block inside a new span.

    Works before :func:`setup_tracing` too, in which case the global (no-op
    by default) provider is used.
    """
    tracer = _tracer or trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        yield span


def add_span_attributes(attributes: dict) -> None:
    span = trace.get_current_span()
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def record_exception(exception: Exception, attributes: Optional[dict] = None) -> None:
    """Record an exception on the active span and mark the span as failed."""
    span = trace.get_current_span()
    span.record_exception(exception, attributes=attributes)
    span.set_status(Status(StatusCode.ERROR, str(exception)))
