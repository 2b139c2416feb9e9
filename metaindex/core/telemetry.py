"""Logging and tracing for the index service.

Spans cover the ping path, each harvest, each webhook delivery and recovery
scans. Every log line carries the active trace and span ids so a harvest can
be followed from the ping that scheduled it.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from metaindex.core.config import Settings

if TYPE_CHECKING:
    from metaindex.domain.models import Event

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
EMPTY_TRACE_ID = "0" * 32
EMPTY_SPAN_ID = "0" * 16

# checked in order; the first one set wins
ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")
HEADERS_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_HEADERS", "OTEL_EXPORTER_OTLP_HEADERS")

logger = logging.getLogger(__name__)
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    app_instrumented: bool = False

    @property
    def enabled(self) -> bool:
        return self.provider is not None


class TraceContextRecordFactory:
    """Log record factory that stamps ``trace_id`` and ``span_id`` on every record."""

    def __init__(self, base: Callable[..., logging.LogRecord] | None = None) -> None:
        self.base = base or logging.getLogRecordFactory()

    def __call__(self, *args: object, **kwargs: object) -> logging.LogRecord:
        record = self.base(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else EMPTY_SPAN_ID
        return record


def install_log_correlation() -> None:
    if isinstance(logging.getLogRecordFactory(), TraceContextRecordFactory):
        return
    logging.setLogRecordFactory(TraceContextRecordFactory())


def configure_logging(level: str | int = logging.INFO) -> None:
    # LOG_FORMAT needs trace_id/span_id on every record, so the factory goes in first.
    install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def annotate_event(span: trace.Span, event: Event) -> None:
    span.set_attribute("metaindex.event.id", str(event.id))
    span.set_attribute("metaindex.event.type", event.type.value)
    if event.entry_id is not None:
        span.set_attribute("metaindex.entry.id", str(event.entry_id))


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime()
    if settings.otel_log_correlation:
        install_log_correlation()

    provider = build_tracer_provider(settings)
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    # harvests and webhook deliveries
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(provider=provider, app_instrumented=True)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.app_instrumented:
        FastAPIInstrumentor.uninstrument_app(app)
        _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def build_tracer_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "metaindex.auto_permit": settings.auto_permit,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    endpoint = exporter_endpoint(settings)
    if endpoint:
        headers = parse_headers(settings.otel_exporter_otlp_headers or _first_env(HEADERS_ENV_VARS))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
    return provider


def exporter_endpoint(settings: Settings) -> str | None:
    return settings.otel_exporter_otlp_endpoint or _first_env(ENDPOINT_ENV_VARS)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by commas, as in ``OTEL_EXPORTER_OTLP_HEADERS``."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None
