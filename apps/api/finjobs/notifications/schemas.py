"""Pydantic schemas for the notifications API."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from finjobs.notifications.preferences import LANGUAGES


class SubmissionResponse(BaseModel):
    """Accepted notification request."""

    job_id: str
    notification_id: str
    status: str  # queued or scheduled


class BulkSubmissionResponse(BaseModel):
    results: list[SubmissionResponse]
    total: int


class NotificationRecordResponse(BaseModel):
    id: str
    job_id: Optional[str] = None
    type: str
    title: str
    message: str
    channels: list[str]
    recipients: list[str]
    data: dict[str, Any]
    priority: str
    status: str
    scheduled_for: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: str


class NotificationHistoryResponse(BaseModel):
    notifications: list[NotificationRecordResponse]
    total: int
    page: int
    limit: int


class DeviceRegisterRequest(BaseModel):
    """Register (or refresh) a push device for the current user."""

    device_id: str = Field(..., min_length=1, max_length=255)
    token: str = Field(..., min_length=1, max_length=512)
    platform: Literal["ios", "android", "web"]
    app_version: Optional[str] = Field(default=None, max_length=32)


class DeviceResponse(BaseModel):
    device_id: str
    platform: str
    app_version: Optional[str] = None
    is_active: bool
    last_used: str
    created_at: str


class DeviceListResponse(BaseModel):
    devices: list[DeviceResponse]
    total: int


class PreferencesUpdateRequest(BaseModel):
    """Partial update; sections are deep-merged into the stored preferences."""

    preferences: dict[str, dict[str, Any]] = Field(default_factory=dict)
    language: Optional[str] = None

    @field_validator("language")
    @classmethod
    def _supported_language(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in LANGUAGES:
            raise ValueError(f"Unsupported language: {value}")
        return value


class PreferencesResponse(BaseModel):
    user_id: str
    preferences: dict[str, Any]
    language: str
    updated_at: str
