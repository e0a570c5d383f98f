"""Append-only log of delivery attempts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from finjobs.common.models import DeliveryResult, utcnow
from finjobs.core.otel_metrics import emit_delivery

logger = logging.getLogger(__name__)


def _uuid_or_none(value) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class DeliveryLog:
    """Operations on ``delivery_results``.

    Rows are only ever inserted, marked delivered, or purged by age.
    """

    @staticmethod
    def append(
        db: Session,
        *,
        channel: str,
        recipient: str,
        status: str,
        job_id=None,
        notification_id=None,
        notification_type: Optional[str] = None,
        address: Optional[str] = None,
        device_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> DeliveryResult:
        row = DeliveryResult(
            job_id=_uuid_or_none(job_id),
            notification_id=_uuid_or_none(notification_id),
            notification_type=notification_type,
            channel=channel,
            recipient=recipient,
            address=address,
            device_id=device_id,
            status=status,
            error=error,
            sent_at=utcnow(),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        emit_delivery(channel, status, notification_type)
        return row

    @staticmethod
    def mark_delivered(db: Session, result_id: UUID) -> bool:
        result = db.execute(
            update(DeliveryResult)
            .where(DeliveryResult.id == result_id, DeliveryResult.status == "sent")
            .values(status="delivered", delivered_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(result.rowcount)

    @staticmethod
    def for_job(db: Session, job_id) -> list[DeliveryResult]:
        return list(
            db.execute(
                select(DeliveryResult)
                .where(DeliveryResult.job_id == _uuid_or_none(job_id))
                .order_by(DeliveryResult.sent_at)
            ).scalars()
        )

    @staticmethod
    def for_notification(db: Session, notification_id) -> list[DeliveryResult]:
        return list(
            db.execute(
                select(DeliveryResult)
                .where(DeliveryResult.notification_id == _uuid_or_none(notification_id))
                .order_by(DeliveryResult.sent_at)
            ).scalars()
        )

    @staticmethod
    def counts_by_channel_status(db: Session) -> dict[str, dict[str, int]]:
        """Return ``{channel: {status: count}}`` over the retained log."""
        rows = db.execute(
            select(DeliveryResult.channel, DeliveryResult.status, func.count())
            .group_by(DeliveryResult.channel, DeliveryResult.status)
        ).all()
        counts: dict[str, dict[str, int]] = {}
        for channel, status, count in rows:
            counts.setdefault(channel, {})[status] = count
        return counts

    @staticmethod
    def purge_older_than(db: Session, cutoff: datetime) -> int:
        result = db.execute(
            delete(DeliveryResult)
            .where(DeliveryResult.sent_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} delivery results older than {cutoff.isoformat()}")
        return result.rowcount or 0
