"""OpenTelemetry helpers for carrying trace context through AMQP headers.

Publishing injects the current context (if any span is active) into message
headers next to the client's own ``x-retries`` header; consuming extracts it so
the handler span continues the producer's trace across every delay-queue hop.
`start_tracing` is only needed by processes that want to export spans.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping

from opentelemetry import trace  # type: ignore
from opentelemetry.context import Context  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Span, Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


TRACER_NAME = "oracle-queue"

# Broker and client headers (x-retries, x-death, x-first-death-*) never carry trace context
_RESERVED_PREFIX = "x-"


def start_tracing(service_name: str = TRACER_NAME) -> Tracer:
    """Install a TracerProvider exporting spans to the console."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = TRACER_NAME) -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` with the current trace context added.

    Existing headers win over injected keys, so the retry count is never
    overwritten by a propagator.
    """
    carrier: Dict[str, Any] = {}
    inject(carrier)
    if headers:
        carrier.update(headers)
    return carrier


def trace_carrier(headers: Mapping[str, Any] | None) -> Dict[str, str]:
    """Build a string-only propagation carrier from AMQP headers.

    Reserved ``x-`` headers are skipped; ``x-death`` in particular is a nested
    table added by the broker on every dead-letter hop.

    >>> trace_carrier({"traceparent": b"00-abc-def-01", "x-retries": 2})
    {'traceparent': '00-abc-def-01'}
    """
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        key = str(key)
        if key.lower().startswith(_RESERVED_PREFIX):
            continue
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        carrier[key] = value if isinstance(value, str) else str(value)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None) -> Context:
    return get_global_textmap().extract(trace_carrier(headers))


@contextmanager
def consume_span(tracer: Tracer, queue_name: str, headers: Mapping[str, Any] | None, retries: int) -> Iterator[Span]:
    """Open a CONSUMER span for one delivery, continuing the publisher's trace."""
    with tracer.start_as_current_span(
        f"{queue_name} process",
        context=extract_context_from_headers(headers),
        kind=trace.SpanKind.CONSUMER,
    ) as span:
        span.set_attribute("messaging.system", "rabbitmq")
        span.set_attribute("messaging.destination.name", queue_name)
        span.set_attribute("messaging.rabbitmq.retries", retries)
        yield span
