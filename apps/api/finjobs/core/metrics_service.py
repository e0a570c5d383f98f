"""Centralized service for emitting business metrics.

This service provides helper methods for emitting business metrics with
consistent structure and metadata.
"""

from typing import Optional

from finjobs.core.business_metrics import MetricCategory
from finjobs.core.otel_metrics import emit_business_metric


class MetricsService:
    """Centralized service for emitting business metrics."""

    @staticmethod
    def emit_job_metric(
        metric_name: str,
        queue_name: str,
        job_type: Optional[str] = None,
        **extra_metadata,
    ) -> None:
        """Emit a job-related metric.

        Args:
            metric_name: Metric name from BusinessMetric
            queue_name: Queue the job belongs to
            job_type: Job type within the queue
            **extra_metadata: Additional metadata to include
        """
        metadata = {"queue": queue_name}
        if job_type:
            metadata["job_type"] = job_type
        metadata.update(extra_metadata)

        emit_business_metric(
            metric_name=metric_name,
            value=1,
            category=MetricCategory.JOB.value,
            **metadata,
        )

    @staticmethod
    def emit_report_metric(metric_name: str, report_type: str, **extra_metadata) -> None:
        emit_business_metric(
            metric_name=metric_name,
            value=1,
            category=MetricCategory.REPORT.value,
            report_type=report_type,
            **extra_metadata,
        )

    @staticmethod
    def emit_notification_metric(
        metric_name: str,
        notification_type: Optional[str] = None,
        count: int = 1,
        channel: Optional[str] = None,
        **extra_metadata,
    ) -> None:
        """Emit a notification-related metric.

        Args:
            metric_name: Metric name from BusinessMetric
            notification_type: Notification type (budget_alert, ...)
            count: Metric value, e.g. number of fanned-out deliveries
            channel: Delivery channel, where one applies
            **extra_metadata: Additional metadata to include
        """
        metadata = {}
        if notification_type:
            metadata["notification_type"] = notification_type
        if channel:
            metadata["channel"] = channel
        metadata.update(extra_metadata)

        emit_business_metric(
            metric_name=metric_name,
            value=count,
            category=MetricCategory.NOTIFICATION.value,
            **metadata,
        )

    @staticmethod
    def emit_device_metric(
        metric_name: str, platform: Optional[str] = None, **extra_metadata
    ) -> None:
        metadata = dict(extra_metadata)
        if platform:
            metadata["platform"] = platform
        emit_business_metric(
            metric_name=metric_name,
            value=1,
            category=MetricCategory.DEVICE.value,
            **metadata,
        )
