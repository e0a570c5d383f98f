"""OpenTelemetry SDK setup and configuration.

Called once by the API on startup and by the worker CLI before its pool
starts, so both process kinds export under the same service namespace.
"""

from __future__ import annotations

import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from finjobs.core.config import settings

logger = logging.getLogger(__name__)

_initialized = False


def setup_opentelemetry(component: str = "api") -> None:
    """Initialize the OpenTelemetry SDK.

    Args:
        component: Process role reported as ``service.instance.role``
            (``api`` or ``worker``)
    """
    global _initialized

    if _initialized:
        return

    if not settings.enable_metrics:
        logger.info("OpenTelemetry metrics disabled via configuration")
        return

    try:
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name or settings.app_name,
                "service.namespace": settings.metrics_namespace
                or settings.app_name.replace(" ", "/"),
                "service.instance.role": component,
            }
        )

        trace_provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(trace_provider)

        endpoint = settings.otel_exporter_otlp_endpoint
        if endpoint:
            metric_reader = PeriodicExportingMetricReader(
                OTLPMetricExporter(endpoint=endpoint + "/v1/metrics"),
                export_interval_millis=60000,
            )
            meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])

            trace_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint + "/v1/traces"))
            )
            # Keep our own formatters; only inject trace context into records
            LoggingInstrumentor().instrument(set_logging_format=False)
            logger.info(f"OpenTelemetry exporters configured: {endpoint}")
        else:
            # No exporter: instruments record into a provider nobody reads
            meter_provider = MeterProvider(resource=resource)
            logger.info("OpenTelemetry exporter not configured (no endpoint specified)")

        metrics.set_meter_provider(meter_provider)

        _initialized = True
        logger.info(f"OpenTelemetry SDK initialized for {component}")

    except Exception as e:
        # Continue without OpenTelemetry; emitters become no-ops
        logger.warning(f"Failed to initialize OpenTelemetry SDK: {e}", exc_info=True)
