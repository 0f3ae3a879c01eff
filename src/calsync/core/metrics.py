"""OpenTelemetry metrics instruments for the outbox sync worker.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during worker startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider stays in place and all recordings are silent.

Instruments
-----------
  calsync.outbox.items_total            Counter (labels: outcome, operation)
      Items drained, by outcome: completed, retry_scheduled, dead_lettered,
      locked, not_ready, store_error.

  calsync.outbox.item_duration_ms       Histogram (label: operation)
      Wall time spent processing one item, lock held.

  calsync.outbox.lock_contention_total  Counter
      Items skipped because another worker holds the lock.

  calsync.outbox.batch_size             Histogram
      Number of ready items returned per poll.

  calsync.connections.invalidated_total Counter
      Tenant connections flagged invalid after an auth failure.

All instruments carry a ``worker`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for a worker process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: The worker's service name (e.g. "calsync.worker-1").

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _items_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.outbox.items_total",
        description="Outbox items drained, by outcome",
        unit="items",
    )


def _item_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.outbox.item_duration_ms",
        description="Time spent processing one outbox item while holding its lock",
        unit="ms",
    )


def _lock_contention_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.outbox.lock_contention_total",
        description="Outbox items skipped because another worker held the lock",
        unit="items",
    )


def _batch_size() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.outbox.batch_size",
        description="Ready outbox items returned per poll",
        unit="items",
    )


def _connections_invalidated_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.connections.invalidated_total",
        description="Calendar connections flagged invalid after an auth failure",
        unit="connections",
    )


class SyncMetrics:
    """Convenience wrapper around the sync worker instruments.

    Create one instance per worker.  Instruments are created on first use, so
    it is safe to construct this object before ``init_metrics`` is called.
    """

    def __init__(self, worker_name: str) -> None:
        self._attrs = {"worker": worker_name}

        self.__items: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__contention: metrics.Counter | None = None
        self.__batch: metrics.Histogram | None = None
        self.__invalidated: metrics.Counter | None = None

    @property
    def _items(self) -> metrics.Counter:
        if self.__items is None:
            self.__items = _items_total()
        return self.__items

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _item_duration_ms()
        return self.__duration

    @property
    def _contention(self) -> metrics.Counter:
        if self.__contention is None:
            self.__contention = _lock_contention_total()
        return self.__contention

    @property
    def _batch(self) -> metrics.Histogram:
        if self.__batch is None:
            self.__batch = _batch_size()
        return self.__batch

    @property
    def _invalidated(self) -> metrics.Counter:
        if self.__invalidated is None:
            self.__invalidated = _connections_invalidated_total()
        return self.__invalidated

    def item_outcome(self, outcome: str, operation: str) -> None:
        """Record one drained item with its final outcome for this attempt."""
        self._items.add(1, {**self._attrs, "outcome": outcome, "operation": operation})

    def record_item_duration(self, duration_ms: float, operation: str) -> None:
        self._duration.record(duration_ms, {**self._attrs, "operation": operation})

    def lock_contended(self) -> None:
        self._contention.add(1, self._attrs)

    def record_batch_size(self, size: int) -> None:
        self._batch.record(size, self._attrs)

    def connection_invalidated(self) -> None:
        self._invalidated.add(1, self._attrs)
