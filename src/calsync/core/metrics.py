"""OpenTelemetry metrics instruments for calendar synchronization.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during worker startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider is used and all recordings are silent no-ops.

Instruments
-----------
  calsync.sync.operations_total       Counter (labels: operation, provider, outcome)
      One increment per connection touched by a coordinator operation.

  calsync.token.refresh_total         Counter (labels: provider, outcome)
      Token refresh attempts by outcome (refreshed, failed, deactivated).

  calsync.provider.request_latency_ms Histogram (labels: provider, method)
      Wall-clock latency of each provider HTTP request.

  calsync.jobs.queue_depth            UpDownCounter (label: job)
      Jobs accepted by the in-process queue but not yet started.

  calsync.jobs.completed_total        Counter (labels: job, outcome)
      Finished job executions by outcome (success, retry, failed, discarded).
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str = "calsync") -> metrics.Meter:
    """Initialize OpenTelemetry metrics for a sync worker process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# SyncMetrics: cached instruments
# ---------------------------------------------------------------------------


class SyncMetrics:
    """Convenience wrapper around the calendar sync instruments.

    Usage::

        _metrics = SyncMetrics()
        _metrics.record_operation("sync_booking", "google", "success")
        _metrics.record_request_latency("google", "POST", 182.4)
    """

    def __init__(self) -> None:
        self.__operations: metrics.Counter | None = None
        self.__refreshes: metrics.Counter | None = None
        self.__latency: metrics.Histogram | None = None
        self.__queue_depth: metrics.UpDownCounter | None = None
        self.__jobs_completed: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _operations(self) -> metrics.Counter:
        if self.__operations is None:
            self.__operations = get_meter().create_counter(
                name="calsync.sync.operations_total",
                description="Coordinator operations per connection by outcome",
                unit="operations",
            )
        return self.__operations

    @property
    def _refreshes(self) -> metrics.Counter:
        if self.__refreshes is None:
            self.__refreshes = get_meter().create_counter(
                name="calsync.token.refresh_total",
                description="OAuth token refresh attempts by outcome",
                unit="refreshes",
            )
        return self.__refreshes

    @property
    def _latency(self) -> metrics.Histogram:
        if self.__latency is None:
            self.__latency = get_meter().create_histogram(
                name="calsync.provider.request_latency_ms",
                description="Latency of calendar provider HTTP requests",
                unit="ms",
            )
        return self.__latency

    @property
    def _queue_depth(self) -> metrics.UpDownCounter:
        if self.__queue_depth is None:
            self.__queue_depth = get_meter().create_up_down_counter(
                name="calsync.jobs.queue_depth",
                description="Jobs waiting in the in-process queue",
                unit="jobs",
            )
        return self.__queue_depth

    @property
    def _jobs_completed(self) -> metrics.Counter:
        if self.__jobs_completed is None:
            self.__jobs_completed = get_meter().create_counter(
                name="calsync.jobs.completed_total",
                description="Finished job executions by outcome",
                unit="jobs",
            )
        return self.__jobs_completed

    # -- recording helpers ---------------------------------------------------

    def record_operation(self, operation: str, provider: str, outcome: str) -> None:
        self._operations.add(
            1, {"operation": operation, "provider": provider, "outcome": outcome}
        )

    def record_refresh(self, provider: str, outcome: str) -> None:
        self._refreshes.add(1, {"provider": provider, "outcome": outcome})

    def record_request_latency(self, provider: str, method: str, latency_ms: float) -> None:
        self._latency.record(latency_ms, {"provider": provider, "method": method})

    def queue_depth_inc(self, job: str) -> None:
        self._queue_depth.add(1, {"job": job})

    def queue_depth_dec(self, job: str) -> None:
        self._queue_depth.add(-1, {"job": job})

    def record_job(self, job: str, outcome: str) -> None:
        self._jobs_completed.add(1, {"job": job, "outcome": outcome})
