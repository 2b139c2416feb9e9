from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import FastAPI
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from metaindex.core.config import Settings
from metaindex.core.telemetry import (
    EMPTY_TRACE_ID,
    TraceContextRecordFactory,
    annotate_event,
    exporter_endpoint,
    parse_headers,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from metaindex.domain.models import Event, EventType, MetadataRetrievalPayload
from tests.fakes import NODE_URL


def _record(factory: TraceContextRecordFactory) -> logging.LogRecord:
    return factory("metaindex.test", logging.INFO, __file__, 1, "harvest", None, None)


def test_parse_headers_skips_malformed_pairs() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = index,broken,=orphan") == {
        "authorization": "Bearer abc",
        "x-team": "index",
    }
    assert parse_headers(None) == {}


def test_exporter_endpoint_prefers_settings_then_trace_specific_env(monkeypatch) -> None:
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "http://collector:4318/v1/traces")

    assert exporter_endpoint(Settings(otel_exporter_otlp_endpoint="http://override:4318")) == "http://override:4318"
    assert exporter_endpoint(Settings()) == "http://collector:4318/v1/traces"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    assert exporter_endpoint(Settings()) == "http://collector:4318"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    assert exporter_endpoint(Settings()) is None


def test_log_records_carry_the_active_trace() -> None:
    factory = TraceContextRecordFactory(logging.LogRecord)
    tracer = TracerProvider().get_tracer("metaindex.test")

    assert _record(factory).trace_id == EMPTY_TRACE_ID

    with tracer.start_as_current_span("index.metadata_retrieval") as span:
        record = _record(factory)

    context = span.get_span_context()
    assert record.trace_id == format(context.trace_id, "032x")
    assert record.span_id == format(context.span_id, "016x")


def test_annotate_event_tags_event_and_entry(clock) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    entry_id = uuid4()
    event = Event(
        type=EventType.METADATA_RETRIEVAL,
        created_at=clock(),
        entry_id=entry_id,
        payload=MetadataRetrievalPayload(client_url=NODE_URL),
    )

    with provider.get_tracer("metaindex.test").start_as_current_span("index.metadata_retrieval") as span:
        annotate_event(span, event)

    [finished] = exporter.get_finished_spans()
    assert finished.attributes["metaindex.event.id"] == str(event.id)
    assert finished.attributes["metaindex.event.type"] == "metadata_retrieval"
    assert finished.attributes["metaindex.entry.id"] == str(entry_id)


def test_disabled_telemetry_installs_nothing() -> None:
    app = FastAPI()

    runtime = setup_api_telemetry(app, Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.app_instrumented is False
    shutdown_api_telemetry(app, runtime)
