"""Notifications, devices, preferences and in-app WebSocket routes."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from finjobs.auth.dependencies import get_current_user_id
from finjobs.common.db import get_db
from finjobs.core.errors import ForbiddenError
from finjobs.jobs import schemas as job_schemas
from finjobs.jobs.dependencies import get_queue_manager
from finjobs.jobs.schemas import isoformat_utc
from finjobs.jobs.exceptions import InvalidRequest
from finjobs.jobs.queue import QueueManager
from finjobs.notifications import schemas
from finjobs.notifications.devices import DeviceService
from finjobs.notifications.preferences import PreferenceService
from finjobs.notifications.service import NotificationService, parse_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])
devices_router = APIRouter(prefix="/devices", tags=["devices"])
preferences_router = APIRouter(prefix="/preferences", tags=["preferences"])
ws_router = APIRouter(tags=["websocket"])


def _record_response(record) -> schemas.NotificationRecordResponse:
    return schemas.NotificationRecordResponse(
        id=str(record.id),
        job_id=str(record.job_id) if record.job_id else None,
        type=record.type,
        title=record.title,
        message=record.message,
        channels=record.channels or [],
        recipients=record.recipients or [],
        data=record.data or {},
        priority=record.priority,
        status=record.status,
        scheduled_for=isoformat_utc(record.scheduled_for),
        processed_at=isoformat_utc(record.processed_at),
        created_at=isoformat_utc(record.created_at),
    )


def _device_response(device) -> schemas.DeviceResponse:
    return schemas.DeviceResponse(
        device_id=device.device_id,
        platform=device.platform,
        app_version=device.app_version,
        is_active=device.is_active,
        last_used=isoformat_utc(device.last_used),
        created_at=isoformat_utc(device.created_at),
    )


def _preferences_response(pref) -> schemas.PreferencesResponse:
    return schemas.PreferencesResponse(
        user_id=pref.user_id,
        preferences=pref.preferences or {},
        language=pref.language,
        updated_at=isoformat_utc(pref.updated_at),
    )


# Notifications

@router.post("/send", response_model=schemas.SubmissionResponse)
async def send_notification(
    body: Any = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    manager: QueueManager = Depends(get_queue_manager),
    db: Session = Depends(get_db),
):
    """Accept a notification for asynchronous fan-out."""
    request = parse_request(body)
    return NotificationService.submit(db, manager, request, sender_id=user_id)


@router.post("/bulk", response_model=schemas.BulkSubmissionResponse)
async def send_bulk_notifications(
    body: Any = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    manager: QueueManager = Depends(get_queue_manager),
    db: Session = Depends(get_db),
):
    """Accept up to 100 notification requests; all are validated before any is queued."""
    if not isinstance(body, dict) or "notifications" not in body:
        raise InvalidRequest("Body must be an object with a 'notifications' list")
    results = NotificationService.submit_bulk(db, manager, body["notifications"], sender_id=user_id)
    return schemas.BulkSubmissionResponse(results=results, total=len(results))


@router.get("/history", response_model=schemas.NotificationHistoryResponse)
async def notification_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    records, total = NotificationService.history(db, user_id, page=page, limit=limit)
    return schemas.NotificationHistoryResponse(
        notifications=[_record_response(r) for r in records],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{job_id}/status", response_model=job_schemas.JobStatusResponse)
async def notification_status(
    job_id: str,
    manager: QueueManager = Depends(get_queue_manager),
):
    """Status of the fan-out (or scheduled) job of a notification."""
    return job_schemas.job_status(manager.get_status(job_id))


# Devices

@devices_router.post(
    "/register",
    response_model=schemas.DeviceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_device(
    request: schemas.DeviceRegisterRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    device = DeviceService.register(
        db,
        user_id=user_id,
        device_id=request.device_id,
        token=request.token,
        platform=request.platform,
        app_version=request.app_version,
    )
    return _device_response(device)


@devices_router.delete("/{device_id}", response_model=schemas.DeviceResponse)
async def unregister_device(
    device_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _device_response(DeviceService.unregister(db, user_id, device_id))


@devices_router.get("", response_model=schemas.DeviceListResponse)
async def list_devices(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    devices = DeviceService.list_active(db, user_id)
    return schemas.DeviceListResponse(
        devices=[_device_response(d) for d in devices], total=len(devices)
    )


# Preferences

def _ensure_self(user_id: str, current_user_id: str) -> None:
    if user_id != current_user_id:
        raise ForbiddenError("Cannot access another user's preferences")


@preferences_router.get("/{user_id}", response_model=schemas.PreferencesResponse)
async def get_preferences(
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    _ensure_self(user_id, current_user_id)
    return _preferences_response(PreferenceService.get_or_create(db, user_id))


@preferences_router.put("/{user_id}", response_model=schemas.PreferencesResponse)
async def update_preferences(
    user_id: str,
    request: schemas.PreferencesUpdateRequest,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Deep-merge a partial preferences document."""
    _ensure_self(user_id, current_user_id)
    pref = PreferenceService.update(
        db, user_id, request.preferences, language=request.language
    )
    return _preferences_response(pref)


# In-app delivery

@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, user_id: Optional[str] = None):
    """Receive in-app notifications for the gateway-authenticated user.

    ``X-User-ID`` is the only identity; a ``user_id`` query value must match it.
    """
    header_user_id = websocket.headers.get("x-user-id")
    if not header_user_id or (user_id is not None and user_id != header_user_id):
        await websocket.close(code=1008)
        return
    user_id = header_user_id

    hub = websocket.app.state.websocket_hub
    await hub.connect(user_id, websocket)
    try:
        while True:
            # Clients may send pings; anything received is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(user_id, websocket)
