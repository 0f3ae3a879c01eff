"""OpenTelemetry tracing for the sync worker.

Tracing stays on the global no-op provider unless OTEL_EXPORTER_OTLP_ENDPOINT
is set.  Each processed outbox item gets one ``calsync.outbox.process`` span.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"
ITEM_SPAN_NAME = "calsync.outbox.process"

_provider_installed = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting TracerProvider once per process, if configured.

    Args:
        service_name: Resource ``service.name``, e.g. ``"calsync.worker-1"``.

    Returns:
        A tracer from whichever provider is now global (possibly no-op).
    """
    global _provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, tracing disabled")
    elif not _provider_installed:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _provider_installed = True
        logger.info("Tracing to %s as %s", endpoint, service_name)

    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def item_span(item_id: UUID, operation: str, *, worker_name: str) -> Iterator[trace.Span]:
    """Current span for one outbox item; escaping exceptions mark it ERROR."""
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(
        ITEM_SPAN_NAME,
        attributes={
            "calsync.outbox_id": str(item_id),
            "calsync.operation": str(operation),
            "calsync.worker": worker_name,
        },
    ) as span:
        yield span
