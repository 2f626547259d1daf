"""OpenTelemetry setup.

Modules obtain tracers and meters through the OpenTelemetry API at import
time; until ``init_telemetry`` installs the SDK providers those are no-ops,
so library code and tests never need an exporter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from crypto_tracker_indexer import __version__
from crypto_tracker_indexer.config import Settings

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "crypto_tracker_indexer"


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(INSTRUMENTATION_NAME, __version__)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(INSTRUMENTATION_NAME, __version__)


@dataclass
class Telemetry:
    """Installed SDK providers, kept so they can be flushed on shutdown."""

    tracer_provider: TracerProvider
    meter_provider: MeterProvider

    def shutdown(self) -> None:
        self.tracer_provider.shutdown()
        self.meter_provider.shutdown()
        logger.info("Telemetry providers shut down")


def init_telemetry(settings: Settings) -> Telemetry | None:
    """Install OTLP/HTTP trace and metric exporters.

    Returns None (leaving the API no-ops in place) when telemetry is disabled.
    """
    if not settings.telemetry.enabled:
        logger.info("Telemetry disabled")
        return None

    endpoint = settings.telemetry.otlp_endpoint
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": __version__,
            "deployment.environment": settings.environment,
        }
    )

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces"))
    )
    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[
            PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics"))
        ],
    )

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    logger.info("Telemetry exporting to %s", endpoint)
    return Telemetry(tracer_provider=tracer_provider, meter_provider=meter_provider)
