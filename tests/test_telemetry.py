"""Tests for tracing helpers and the metrics wrapper."""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import init_telemetry, sync_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state() -> None:
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calsync-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestSyncSpan:
    def test_name_and_attributes(self, otel_provider) -> None:
        with sync_span("sync_booking", booking_id=101, business_id=None):
            pass

        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calsync.sync_booking"
        assert span.attributes["calsync.booking_id"] == "101"
        assert "calsync.business_id" not in span.attributes

    def test_records_exception(self, otel_provider) -> None:
        with pytest.raises(ValueError, match="boom"):
            with sync_span("delete_booking"):
                raise ValueError("boom")

        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_nested_spans_share_trace(self, otel_provider) -> None:
        with sync_span("job.sync_booking"):
            with sync_span("sync_booking"):
                pass

        inner, outer = otel_provider.get_finished_spans()
        assert inner.parent.span_id == outer.context.span_id
        assert inner.context.trace_id == outer.context.trace_id

    async def test_decorator(self, otel_provider) -> None:
        @sync_span("token_refresh_job")
        async def job(value: int) -> int:
            return value * 2

        assert await job(21) == 42
        assert [s.name for s in otel_provider.get_finished_spans()] == [
            "calsync.token_refresh_job"
        ]


def test_init_telemetry_without_endpoint_is_noop(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert init_telemetry("calsync-worker") is not None


def test_metrics_record_without_provider() -> None:
    metrics = SyncMetrics()
    metrics.record_operation("sync_booking", "Google Calendar", "success")
    metrics.record_refresh("google", "refreshed")
    metrics.record_request_latency("google", "POST", 12.5)
    metrics.queue_depth_inc("sync_booking")
    metrics.queue_depth_dec("sync_booking")
    metrics.record_job("sync_booking", "success")
