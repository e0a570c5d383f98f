"""Base classes and enums shared across all models."""

from __future__ import annotations

from sqlalchemy import Enum, MetaData


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


# Import Base here to avoid circular imports
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    metadata = metadata


# Job enums
JobStateEnum = Enum(
    "waiting", "active", "completed", "dead_lettered", name="job_state"
)
BackoffKind = Enum("exponential", "fixed", name="backoff_kind")

# Notification enums
NotificationPriority = Enum(
    "low", "normal", "high", "urgent", name="notification_priority"
)
DeliveryStatus = Enum(
    "sent", "delivered", "failed", "bounced", "simulated", name="delivery_status"
)
DevicePlatform = Enum("ios", "android", "web", name="device_platform")
