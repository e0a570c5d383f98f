"""Push device registrations."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from finjobs.common.models import DeviceToken, utcnow
from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.errors import NotFoundError
from finjobs.core.metrics_service import MetricsService

logger = logging.getLogger(__name__)


class DeviceService:
    """Service for device token operations.

    Tokens are never hard-deleted; unregistering or an invalid-token report
    from the push gateway only deactivates them.
    """

    @staticmethod
    def register(
        db: Session,
        user_id: str,
        device_id: str,
        token: str,
        platform: str,
        app_version: Optional[str] = None,
    ) -> DeviceToken:
        """Upsert the registration for ``(user_id, device_id)``.

        A token moving to a new device or user is released from its previous
        registration first.
        """
        now = utcnow()
        db.execute(
            update(DeviceToken)
            .where(
                DeviceToken.token == token,
                (DeviceToken.user_id != user_id) | (DeviceToken.device_id != device_id),
            )
            .values(token=f"released:{now.timestamp()}:{device_id}", is_active=False)
            .execution_options(synchronize_session=False)
        )

        device = db.execute(
            select(DeviceToken).where(
                DeviceToken.user_id == user_id, DeviceToken.device_id == device_id
            )
        ).scalar_one_or_none()
        if device is None:
            device = DeviceToken(user_id=user_id, device_id=device_id, token=token, platform=platform)
            db.add(device)
        device.token = token
        device.platform = platform
        device.app_version = app_version
        device.is_active = True
        device.last_used = now
        db.commit()
        db.refresh(device)

        logger.info(f"Registered {platform} device {device_id} for user {user_id}")
        MetricsService.emit_device_metric(BusinessMetric.DEVICE_REGISTERED, platform=platform)
        return device

    @staticmethod
    def unregister(db: Session, user_id: str, device_id: str) -> DeviceToken:
        device = db.execute(
            select(DeviceToken).where(
                DeviceToken.user_id == user_id, DeviceToken.device_id == device_id
            )
        ).scalar_one_or_none()
        if device is None:
            raise NotFoundError("Device", device_id)
        device.is_active = False
        db.commit()
        db.refresh(device)
        MetricsService.emit_device_metric(
            BusinessMetric.DEVICE_UNREGISTERED, platform=device.platform
        )
        return device

    @staticmethod
    def list_active(db: Session, user_id: str) -> list[DeviceToken]:
        return list(
            db.execute(
                select(DeviceToken)
                .where(DeviceToken.user_id == user_id, DeviceToken.is_active.is_(True))
                .order_by(DeviceToken.last_used.desc())
            ).scalars()
        )

    @staticmethod
    def deactivate_token(db: Session, token: str) -> bool:
        """Deactivate a token the push gateway reported as unregistered."""
        result = db.execute(
            update(DeviceToken)
            .where(DeviceToken.token == token, DeviceToken.is_active.is_(True))
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.warning(f"Deactivated invalid push token ...{token[-8:]}")
            MetricsService.emit_device_metric(BusinessMetric.DEVICE_TOKEN_INVALIDATED)
        return bool(result.rowcount)

    @staticmethod
    def touch(db: Session, device_pk) -> None:
        """Record a successful push to the device."""
        db.execute(
            update(DeviceToken)
            .where(DeviceToken.id == device_pk)
            .values(last_used=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
