"""OpenTelemetry metrics instruments for the scheduling engine.

Instruments
-----------
  aircon.timers.armed            Counter  (label: kind=on|off)
      Timers created by the store.

  aircon.timers.cancelled        Counter  (label: kind=on|off)
      Live timers cancelled before firing.

  aircon.publish.total           Counter  (label: power=on|off)
      Power commands handed to the publisher.

  aircon.publish.failures        Counter
      Publish attempts that raised.

  aircon.reconcile.outcomes      Counter  (label: outcome)
      Per-entry reconciliation outcomes.

Instruments are created lazily from the global MeterProvider, so it is safe
to record before ``init_metrics`` has run (recordings are no-ops until a real
provider is installed).
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "aircon_scheduler"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the daemon.

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
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class SchedulerMetrics:
    """Convenience wrapper that caches the engine's instruments.

    Typical usage::

        _metrics = SchedulerMetrics()
        _metrics.timer_armed("on")
        _metrics.publish("off")
    """

    def __init__(self) -> None:
        self._timers_armed: metrics.Counter | None = None
        self._timers_cancelled: metrics.Counter | None = None
        self._publish_total: metrics.Counter | None = None
        self._publish_failures: metrics.Counter | None = None
        self._outcomes: metrics.Counter | None = None

    def timer_armed(self, kind: str) -> None:
        if self._timers_armed is None:
            self._timers_armed = get_meter().create_counter(
                name="aircon.timers.armed",
                description="Power timers created",
                unit="timers",
            )
        self._timers_armed.add(1, {"kind": kind})

    def timer_cancelled(self, kind: str) -> None:
        if self._timers_cancelled is None:
            self._timers_cancelled = get_meter().create_counter(
                name="aircon.timers.cancelled",
                description="Live power timers cancelled before firing",
                unit="timers",
            )
        self._timers_cancelled.add(1, {"kind": kind})

    def publish(self, power: str) -> None:
        if self._publish_total is None:
            self._publish_total = get_meter().create_counter(
                name="aircon.publish.total",
                description="Power commands handed to the publisher",
                unit="commands",
            )
        self._publish_total.add(1, {"power": power})

    def publish_failed(self) -> None:
        if self._publish_failures is None:
            self._publish_failures = get_meter().create_counter(
                name="aircon.publish.failures",
                description="Power commands the publisher rejected",
                unit="commands",
            )
        self._publish_failures.add(1)

    def outcome(self, outcome: str) -> None:
        if self._outcomes is None:
            self._outcomes = get_meter().create_counter(
                name="aircon.reconcile.outcomes",
                description="Per-entry reconciliation outcomes",
                unit="entries",
            )
        self._outcomes.add(1, {"outcome": outcome})
