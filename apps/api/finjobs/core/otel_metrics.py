"""OpenTelemetry metrics implementation.

Instruments are created lazily on first use. Every ``emit_*`` function is a
no-op when metrics are disabled and never raises: a failed metric emission
must not break a request or a job.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, UpDownCounter, Meter

from finjobs.core.config import settings

logger = logging.getLogger(__name__)

# Global meter instance
_meter: Meter | None = None


def get_meter() -> Meter:
    """Get or create the global OpenTelemetry meter instance."""
    global _meter
    if _meter is None:
        meter_provider = metrics.get_meter_provider()
        _meter = meter_provider.get_meter(
            name=settings.metrics_namespace or settings.app_name.replace(" ", "/"),
            version="1.0.0",
        )
    return _meter


# Metric instruments (lazy initialization)
_http_request_counter: Counter | None = None
_http_request_duration: Histogram | None = None
_active_requests_gauge: UpDownCounter | None = None
_error_counter: Counter | None = None
_business_metric_counter: Counter | None = None
_job_event_counter: Counter | None = None
_job_duration: Histogram | None = None
_delivery_counter: Counter | None = None


def _get_http_request_counter() -> Counter:
    global _http_request_counter
    if _http_request_counter is None:
        _http_request_counter = get_meter().create_counter(
            name="http_requests_total",
            description="Total number of HTTP requests",
            unit="1",
        )
    return _http_request_counter


def _get_http_request_duration() -> Histogram:
    global _http_request_duration
    if _http_request_duration is None:
        _http_request_duration = get_meter().create_histogram(
            name="http_request_duration_ms",
            description="HTTP request duration in milliseconds",
            unit="ms",
        )
    return _http_request_duration


def _get_active_requests_gauge() -> UpDownCounter:
    global _active_requests_gauge
    if _active_requests_gauge is None:
        _active_requests_gauge = get_meter().create_up_down_counter(
            name="http_active_requests",
            description="Number of active HTTP requests",
            unit="1",
        )
    return _active_requests_gauge


def _get_error_counter() -> Counter:
    global _error_counter
    if _error_counter is None:
        _error_counter = get_meter().create_counter(
            name="errors_total",
            description="Total number of errors",
            unit="1",
        )
    return _error_counter


def _get_business_metric_counter() -> Counter:
    global _business_metric_counter
    if _business_metric_counter is None:
        _business_metric_counter = get_meter().create_counter(
            name="business_metrics_total",
            description="Total number of business metric events",
            unit="1",
        )
    return _business_metric_counter


def _get_job_event_counter() -> Counter:
    global _job_event_counter
    if _job_event_counter is None:
        _job_event_counter = get_meter().create_counter(
            name="jobs_events_total",
            description="Job lifecycle events (enqueued, completed, retried, dead_lettered, reclaimed)",
            unit="1",
        )
    return _job_event_counter


def _get_job_duration() -> Histogram:
    global _job_duration
    if _job_duration is None:
        _job_duration = get_meter().create_histogram(
            name="job_handler_duration_ms",
            description="Handler execution time in milliseconds",
            unit="ms",
        )
    return _job_duration


def _get_delivery_counter() -> Counter:
    global _delivery_counter
    if _delivery_counter is None:
        _delivery_counter = get_meter().create_counter(
            name="notification_deliveries_total",
            description="Notification delivery attempts by channel and status",
            unit="1",
        )
    return _delivery_counter


def _normalize_path(path: str) -> str:
    """Replace UUIDs and numeric ids in a path with ``{id}``."""
    path = re.sub(
        r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "/{id}",
        path,
        flags=re.IGNORECASE,
    )
    return re.sub(r"/\d+", "/{id}", path)


def _attributes(base: dict[str, str], metadata: dict[str, Any]) -> dict[str, str]:
    attributes = dict(base)
    for key, value in metadata.items():
        if value is not None:
            attributes[key] = str(value)
    return attributes


def emit_http_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    **metadata: Any,
) -> None:
    """Emit HTTP request count and duration.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        **metadata: Additional attributes (request_id, user_id)
    """
    if not settings.enable_metrics:
        return

    try:
        attributes = _attributes(
            {
                "http.method": method,
                "http.route": _normalize_path(path),
                "http.status_code": str(status_code),
            },
            metadata,
        )
        _get_http_request_counter().add(1, attributes=attributes)
        _get_http_request_duration().record(duration_ms, attributes=attributes)
    except Exception as e:
        logger.warning(f"Failed to emit HTTP request metric: {e}", exc_info=True)


def increment_active_requests() -> None:
    if not settings.enable_metrics:
        return
    try:
        _get_active_requests_gauge().add(1)
    except Exception as e:
        logger.warning(f"Failed to increment active requests metric: {e}", exc_info=True)


def decrement_active_requests() -> None:
    if not settings.enable_metrics:
        return
    try:
        _get_active_requests_gauge().add(-1)
    except Exception as e:
        logger.warning(f"Failed to decrement active requests metric: {e}", exc_info=True)


def emit_error(
    error_code: str,
    status_code: int,
    path: str,
    method: str,
    **metadata: Any,
) -> None:
    """Emit an error count classified by severity."""
    if not settings.enable_metrics:
        return

    try:
        if status_code >= 500:
            severity = "server_error"
        elif status_code >= 400:
            severity = "client_error"
        else:
            severity = "unknown"

        attributes = _attributes(
            {
                "error.code": error_code,
                "http.status_code": str(status_code),
                "error.severity": severity,
                "http.method": method,
                "http.route": _normalize_path(path),
            },
            metadata,
        )
        _get_error_counter().add(1, attributes=attributes)
    except Exception as e:
        logger.warning(f"Failed to emit error metric: {e}", exc_info=True)


def emit_business_metric(
    metric_name: str,
    value: float = 1,
    category: str | None = None,
    **metadata: Any,
) -> None:
    """Emit a named business event (e.g. NotificationRequested)."""
    if not settings.enable_metrics:
        return

    try:
        base = {"metric.name": metric_name}
        if category:
            base["metric.category"] = category
        _get_business_metric_counter().add(value, attributes=_attributes(base, metadata))
    except Exception as e:
        logger.warning(f"Failed to emit business metric {metric_name}: {e}", exc_info=True)


def emit_job_event(event: str, queue_name: str, job_type: str) -> None:
    """Count one job lifecycle event."""
    if not settings.enable_metrics:
        return

    try:
        _get_job_event_counter().add(
            1,
            attributes={"job.event": event, "job.queue": queue_name, "job.type": job_type},
        )
    except Exception as e:
        logger.warning(f"Failed to emit job event metric: {e}", exc_info=True)


def emit_job_duration(
    queue_name: str, job_type: str, duration_ms: float, outcome: str
) -> None:
    """Record how long one handler invocation ran."""
    if not settings.enable_metrics:
        return

    try:
        _get_job_duration().record(
            duration_ms,
            attributes={
                "job.queue": queue_name,
                "job.type": job_type,
                "job.outcome": outcome,
            },
        )
    except Exception as e:
        logger.warning(f"Failed to emit job duration metric: {e}", exc_info=True)


def emit_delivery(channel: str, status: str, notification_type: str | None = None) -> None:
    """Count one notification delivery attempt."""
    if not settings.enable_metrics:
        return

    try:
        attributes = {"delivery.channel": channel, "delivery.status": status}
        if notification_type:
            attributes["notification.type"] = notification_type
        _get_delivery_counter().add(1, attributes=attributes)
    except Exception as e:
        logger.warning(f"Failed to emit delivery metric: {e}", exc_info=True)
