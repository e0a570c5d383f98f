"""Fan-out of notification requests into per-channel delivery jobs.

``send-notification`` expands one request into ``send-<channel>`` jobs, one
per recipient and enabled channel, after the recipient's preferences and
thresholds have been applied. WebSocket and in-app messages are pushed
through the hub directly. ``scheduled-notification`` fires once its delay
has elapsed and re-submits the request for immediate fan-out.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from finjobs.common.models import NotificationRecord, utcnow
from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.metrics_service import MetricsService
from finjobs.jobs.isolation import JobContext
from finjobs.jobs.payloads import (
    PRIORITY_LEVELS,
    QUEUED_CHANNELS,
    NotificationRequest,
    parse_payload,
)
from finjobs.notifications.preferences import PreferenceService

logger = logging.getLogger(__name__)

QUEUE = "notifications"


def _load_record(db: Session, notification_id: Optional[str]) -> Optional[NotificationRecord]:
    if not notification_id:
        return None
    try:
        return db.get(NotificationRecord, UUID(notification_id))
    except ValueError:
        return None


def channel_job_payload(request: NotificationRequest, user_id: str, channel: str) -> dict[str, Any]:
    return {
        "notification_id": request.notification_id,
        "notification_type": request.type,
        "title": request.title,
        "message": request.message,
        "data": request.data,
        "user_id": user_id,
        "channel": channel,
        "priority": request.priority,
    }


def in_app_message(request: NotificationRequest) -> dict[str, Any]:
    return {
        "event": "notification",
        "notification_id": request.notification_id,
        "type": request.type,
        "title": request.title,
        "message": request.message,
        "data": request.data,
        "priority": request.priority,
        "sent_at": utcnow().isoformat(),
    }


def fan_out(ctx: JobContext) -> dict[str, Any]:
    """Handler for ``notifications/send-notification``."""
    services = ctx.services
    request = parse_payload(QUEUE, "send-notification", ctx.payload)
    priority = PRIORITY_LEVELS[request.priority]

    enqueued: list[str] = []
    in_process = 0
    suppressed = 0
    skipped = 0

    with services.session_factory() as db:
        record = _load_record(db, request.notification_id)
        if record is not None:
            record.status = "processing"
            db.commit()

        for index, user_id in enumerate(request.recipients):
            ctx.raise_if_cancelled()
            preferences = PreferenceService.get_or_create(db, user_id).preferences or {}

            if not PreferenceService.passes_thresholds(preferences, request.type, request.data):
                logger.info(
                    f"Notification {request.notification_id} below threshold for user {user_id}"
                )
                suppressed += 1
                continue

            for channel in request.channels:
                if not PreferenceService.is_channel_enabled(preferences, request.type, channel):
                    skipped += 1
                    continue
                if channel in QUEUED_CHANNELS:
                    job = services.manager.enqueue(
                        channel,
                        f"send-{channel}",
                        channel_job_payload(request, user_id, channel),
                        priority=priority,
                    )
                    enqueued.append(str(job.id))
                else:
                    services.hub.send_to_user(user_id, in_app_message(request))
                    in_process += 1

            ctx.report_progress(int((index + 1) / len(request.recipients) * 100))

        if record is not None:
            record.status = "processed"
            record.processed_at = utcnow()
            db.commit()

    if suppressed:
        MetricsService.emit_notification_metric(
            BusinessMetric.NOTIFICATION_SUPPRESSED, request.type, count=suppressed
        )
    MetricsService.emit_notification_metric(
        BusinessMetric.NOTIFICATION_FANNED_OUT, request.type, count=len(enqueued) + in_process
    )
    logger.info(
        f"Fanned out notification {request.notification_id}: "
        f"{len(enqueued)} jobs, {in_process} in-app, {suppressed} suppressed, {skipped} skipped"
    )
    return {
        "notification_id": request.notification_id,
        "recipients": len(request.recipients),
        "delivery_jobs": enqueued,
        "in_process": in_process,
        "suppressed": suppressed,
        "skipped_channels": skipped,
        "processed_at": utcnow().isoformat(),
    }


def release_scheduled(ctx: JobContext) -> dict[str, Any]:
    """Handler for ``notifications/scheduled-notification``."""
    services = ctx.services
    request = parse_payload(QUEUE, "scheduled-notification", ctx.payload)
    payload = request.model_dump(mode="json", exclude={"scheduled_for"})

    job = services.manager.enqueue(
        QUEUE,
        "send-notification",
        payload,
        priority=PRIORITY_LEVELS[request.priority],
    )
    with services.session_factory() as db:
        record = _load_record(db, request.notification_id)
        if record is not None:
            record.status = "queued"
            db.commit()

    logger.info(f"Released scheduled notification {request.notification_id} as job {job.id}")
    return {"notification_id": request.notification_id, "send_job_id": str(job.id)}


HANDLERS = {
    "send-notification": fan_out,
    "scheduled-notification": release_scheduled,
}
