"""OpenTelemetry initialization and span wrappers for calendar sync operations."""

from __future__ import annotations

import functools
import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing for a sync worker process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with OTLP gRPC exporter on the first call. Subsequent calls reuse the
    existing provider.

    Args:
        service_name: Service name attached to exported spans.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing for service=%s", service_name)
        return trace.get_tracer(_TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(_TRACER_NAME)


# ---------------------------------------------------------------------------
# Span wrappers
# ---------------------------------------------------------------------------


class sync_span:
    """Create an OpenTelemetry span around a sync operation.

    Can be used as a **context manager** or as a **decorator** on async functions.

    Context manager usage::

        with sync_span("sync_booking", booking_id=str(booking.id)):
            ...

    Decorator usage::

        @sync_span("token_refresh_job")
        async def token_refresh_job(ctx):
            ...

    The span is named ``calsync.<name>`` and carries every keyword argument as
    a ``calsync.<key>`` attribute (``None`` values are skipped).  Exceptions
    are recorded on the span and the status set to ERROR before re-raising.
    """

    def __init__(self, name: str, **attributes: Any) -> None:
        self._name = name
        self._attributes = attributes
        self._span_name = f"calsync.{name}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    # -- context manager protocol ------------------------------------------

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        for key, value in self._attributes.items():
            if value is not None:
                self._span.set_attribute(f"calsync.{key}", str(value))
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    # -- decorator protocol ------------------------------------------------

    def __call__(self, func):  # noqa: ANN001, ANN204
        name = self._name
        attributes = self._attributes

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # Fresh instance per call so concurrent invocations never share span state.
            with sync_span(name, **attributes):
                return await func(*args, **kwargs)

        return _wrapper
