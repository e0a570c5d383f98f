"""Business metrics catalog with standardized naming.

Use these names with ``MetricsService`` so dashboards see one spelling per
event across the API and the workers.
"""

from enum import Enum


class MetricCategory(str, Enum):
    """Categories for grouping business metrics."""

    JOB = "job"
    REPORT = "report"
    NOTIFICATION = "notification"
    DEVICE = "device"


class BusinessMetric:
    """Catalog of all business metrics with standardized naming."""

    # Job metrics
    JOB_SUBMITTED = "JobSubmitted"
    JOB_CANCELLED = "JobCancelled"

    # Report metrics
    PDF_GENERATED = "PdfGenerated"

    # Notification metrics
    NOTIFICATION_REQUESTED = "NotificationRequested"
    NOTIFICATION_SCHEDULED = "NotificationScheduled"
    NOTIFICATION_FANNED_OUT = "NotificationFannedOut"
    NOTIFICATION_SUPPRESSED = "NotificationSuppressed"
    DELIVERY_FAILED = "DeliveryFailed"
    PREFERENCES_UPDATED = "PreferencesUpdated"

    # Device metrics
    DEVICE_REGISTERED = "DeviceRegistered"
    DEVICE_UNREGISTERED = "DeviceUnregistered"
    DEVICE_TOKEN_INVALIDATED = "DeviceTokenInvalidated"
