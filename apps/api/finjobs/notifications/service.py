"""Notification submission and history."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import Session

from finjobs.common.models import NotificationRecord, utcnow
from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.metrics_service import MetricsService
from finjobs.jobs.exceptions import InvalidPayload, InvalidRequest, JobError
from finjobs.jobs.payloads import (
    PRIORITY_LEVELS,
    NotificationRequest,
    ensure_serializable,
)
from finjobs.jobs.queue import QueueManager

logger = logging.getLogger(__name__)

QUEUE = "notifications"
MAX_BULK_REQUESTS = 100


def _errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(loc) for loc in err.get("loc", [])),
            "message": err.get("msg", "Invalid value"),
            "type": err.get("type", "validation_error"),
        }
        for err in exc.errors()
    ]


def parse_request(body: Any) -> NotificationRequest:
    """Validate a raw notification request body.

    Raises:
        InvalidPayload: Missing type/title/message, empty channels or
            recipients, or any other schema violation
    """
    ensure_serializable(body)
    try:
        return NotificationRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidPayload("Invalid notification request", {"errors": _errors(e)}) from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationService:
    """Service for notification submission."""

    @staticmethod
    def submit(
        db: Session,
        manager: QueueManager,
        request: NotificationRequest,
        sender_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Record a notification request and queue its fan-out.

        A ``scheduled_for`` in the future queues a ``scheduled-notification``
        job delayed until then; anything else is fanned out immediately.

        Returns:
            ``{"job_id", "notification_id", "status"}`` with status
            ``queued`` or ``scheduled``
        """
        now = utcnow()
        scheduled_for = _as_utc(request.scheduled_for) if request.scheduled_for else None
        delay_ms = 0
        if scheduled_for is not None and scheduled_for > now:
            delay_ms = int((scheduled_for - now).total_seconds() * 1000)

        record = NotificationRecord(
            id=uuid4(),
            sender_id=sender_id,
            type=request.type,
            title=request.title,
            message=request.message,
            channels=list(request.channels),
            recipients=list(request.recipients),
            data=request.data,
            priority=request.priority,
            status="scheduled" if delay_ms else "queued",
            scheduled_for=scheduled_for,
        )
        db.add(record)
        db.commit()

        payload = request.model_copy(update={"notification_id": str(record.id)})
        payload = payload.model_dump(mode="json")
        job_type = "scheduled-notification" if delay_ms else "send-notification"
        try:
            job = manager.enqueue(
                QUEUE,
                job_type,
                payload,
                priority=PRIORITY_LEVELS[request.priority],
                delay_ms=delay_ms,
            )
        except JobError:
            record.status = "failed"
            db.commit()
            raise

        record.job_id = job.id
        db.commit()

        metric = (
            BusinessMetric.NOTIFICATION_SCHEDULED if delay_ms
            else BusinessMetric.NOTIFICATION_REQUESTED
        )
        MetricsService.emit_notification_metric(
            metric, request.type, count=len(request.recipients)
        )
        logger.info(
            f"Notification {record.id} ({request.type}) {record.status} as job {job.id} "
            f"for {len(request.recipients)} recipient(s)"
        )
        return {"job_id": str(job.id), "notification_id": str(record.id), "status": record.status}

    @staticmethod
    def submit_bulk(
        db: Session,
        manager: QueueManager,
        bodies: Any,
        sender_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Validate every request first, then submit them in order."""
        if not isinstance(bodies, list) or not bodies:
            raise InvalidRequest("notifications must be a non-empty list")
        if len(bodies) > MAX_BULK_REQUESTS:
            raise InvalidRequest(
                f"At most {MAX_BULK_REQUESTS} notifications per bulk request",
                {"count": len(bodies)},
            )

        requests = []
        for index, body in enumerate(bodies):
            try:
                requests.append(parse_request(body))
            except InvalidPayload as e:
                raise InvalidPayload(
                    f"Invalid notification request at index {index}",
                    {"index": index, **e.details},
                ) from e

        return [NotificationService.submit(db, manager, r, sender_id) for r in requests]

    @staticmethod
    def history(
        db: Session, user_id: str, page: int = 1, limit: int = 20
    ) -> tuple[list[NotificationRecord], int]:
        """Notifications sent by or addressed to ``user_id``, newest first."""
        # Matches the quoted id inside the serialized recipients array
        condition = or_(
            NotificationRecord.sender_id == user_id,
            cast(NotificationRecord.recipients, String).contains(f'"{user_id}"', autoescape=True),
        )
        total = db.execute(
            select(func.count()).select_from(NotificationRecord).where(condition)
        ).scalar_one()
        rows = db.execute(
            select(NotificationRecord)
            .where(condition)
            .order_by(NotificationRecord.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
        return list(rows), total

    @staticmethod
    def get(db: Session, notification_id: str) -> Optional[NotificationRecord]:
        try:
            return db.get(NotificationRecord, UUID(notification_id))
        except ValueError:
            return None

    @staticmethod
    def count_by_status(db: Session) -> dict[str, int]:
        rows = db.execute(
            select(NotificationRecord.status, func.count()).group_by(NotificationRecord.status)
        ).all()
        return {status: count for status, count in rows}
