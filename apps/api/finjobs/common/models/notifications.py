"""Notification domain models (records, delivery log, preferences, devices, contacts)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4, UUID

from sqlalchemy import (
    Boolean,
    Index,
    JSON,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from finjobs.common.models.base import (
    Base,
    DeliveryStatus,
    DevicePlatform,
    NotificationPriority,
)
from finjobs.common.models.jobs import utcnow


class NotificationRecord(Base):
    """One logical notification request as submitted by a caller."""

    __tablename__ = "notification_records"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    job_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    sender_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    recipients: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(
        NotificationPriority, nullable=False, default="normal"
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="queued")
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )


class DeliveryResult(Base):
    """Append-only record of one delivery attempt (job, recipient, channel)."""

    __tablename__ = "delivery_results"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    job_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    notification_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    notification_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(DeliveryStatus, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_delivery_results_channel_status", "channel", "status"),
        Index("ix_delivery_results_recipient", "recipient"),
    )


class NotificationPreference(Base):
    """Per-user notification settings, keyed by user id."""

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    language: Mapped[str] = mapped_column(String(8), nullable=False, default="en")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class DeviceToken(Base):
    """Registration of a push-capable endpoint."""

    __tablename__ = "device_tokens"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(DevicePlatform, nullable=False)
    app_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_device_tokens_user_device"),
    )


class UserContact(Base):
    """Read model of user contact addresses, owned by the user-profile domain."""

    __tablename__ = "user_contacts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
