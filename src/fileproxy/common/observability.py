"""Structured logging, tracing and per-artifact context for the proxy.

Every log line written while a request is handled carries the request id,
and while an artifact is being served also its key, so the remote fetch,
the fallback read and the background cache write of one request can be
correlated. Spans opened with :func:`artifact_span` carry the same key.
"""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, bound_contextvars

if TYPE_CHECKING:
    from fastapi import FastAPI

    from .content import Key
    from .settings import ProxySettings


SERVICE_NAME = "fileproxy"
REQUEST_ID_HEADER = "x-request-id"
KEY_ATTRIBUTE = "fileproxy.key"

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_logging_configured = False
_tracer_configured = False


def configure_logging(service_name: str = SERVICE_NAME, level: str | int | None = None) -> None:
    """Render structlog events as one JSON object per line through stdlib logging."""

    global _logging_configured
    numeric_level = level if isinstance(level, int) else logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``FILEPROXY_OTEL_EXPORTER_HEADERS`` (``k=v,k2=v2``), skipping malformed pairs."""
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(settings: "ProxySettings") -> None:
    """Install the process tracer provider and trace calls to the origin.

    Spans go to the OTLP endpoint from settings, or to an in-memory exporter
    when none is configured. A provider installed by someone else is left in
    place.
    """

    global _tracer_configured
    if _tracer_configured:
        return
    _tracer_configured = True
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    if settings.otel_exporter_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(InMemorySpanExporter()))
    trace.set_tracer_provider(provider)

    instrumentor = HTTPXClientInstrumentor()
    if not instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.instrument()


def instrument_app(app: "FastAPI") -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=trace.get_tracer_provider())


def request_id_from(header_value: Optional[str]) -> str:
    """Reuse a caller-supplied request id when it is safe to log, else mint one."""
    if header_value and _REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid.uuid4().hex


@contextmanager
def request_context(request_id: str, method: str, path: str) -> Iterator[None]:
    with bound_contextvars(request_id=request_id, method=method, path=path):
        yield


@contextmanager
def artifact_span(tracer: trace.Tracer, name: str, key: "Key", **attributes) -> Iterator[trace.Span]:
    """Open a span for one artifact and tag log lines inside it with the key."""
    span_attributes = {KEY_ATTRIBUTE: key.string()}
    span_attributes.update({f"fileproxy.{attr}": value for attr, value in attributes.items()})
    with tracer.start_as_current_span(name, attributes=span_attributes) as span:
        with bound_contextvars(key=key.string()):
            yield span
