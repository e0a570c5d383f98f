"""Models package - exports all models.

Models are organized into:
- base: Base class, metadata, and enums
- jobs: Queue store records
- notifications: Notification records, delivery log, preferences, devices, contacts
"""

from __future__ import annotations

# Export Base and metadata first (required by other models)
from finjobs.common.models.base import (
    Base,
    metadata,
    NAMING_CONVENTION,
    # Enums
    JobStateEnum,
    BackoffKind,
    NotificationPriority,
    DeliveryStatus,
    DevicePlatform,
)

from finjobs.common.models.jobs import Job, utcnow

from finjobs.common.models.notifications import (
    NotificationRecord,
    DeliveryResult,
    NotificationPreference,
    DeviceToken,
    UserContact,
)

__all__ = [
    # Base
    "Base",
    "metadata",
    "NAMING_CONVENTION",
    # Enums
    "JobStateEnum",
    "BackoffKind",
    "NotificationPriority",
    "DeliveryStatus",
    "DevicePlatform",
    # Jobs
    "Job",
    "utcnow",
    # Notifications
    "NotificationRecord",
    "DeliveryResult",
    "NotificationPreference",
    "DeviceToken",
    "UserContact",
]
