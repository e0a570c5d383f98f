"""Handlers for the ``push``, ``email`` and ``sms`` delivery queues."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.metrics_service import MetricsService
from finjobs.jobs.exceptions import PermanentFailure
from finjobs.jobs.isolation import JobContext
from finjobs.jobs.payloads import ChannelDeliveryPayload, parse_payload
from finjobs.notifications.adapters import DeliveryOutcome
from finjobs.notifications.contacts import placeholder_address, resolve_address
from finjobs.notifications.delivery_log import DeliveryLog
from finjobs.notifications.devices import DeviceService

logger = logging.getLogger(__name__)

NO_DEVICE_ERROR = "No registered device"


def _record(
    db: Session,
    ctx: JobContext,
    delivery: ChannelDeliveryPayload,
    outcome: DeliveryOutcome,
    address: str | None = None,
    device_id: str | None = None,
) -> dict[str, Any]:
    DeliveryLog.append(
        db,
        job_id=ctx.job_id,
        notification_id=delivery.notification_id,
        notification_type=delivery.notification_type,
        channel=delivery.channel,
        recipient=delivery.user_id,
        address=address,
        device_id=device_id,
        status=outcome.status,
        error=outcome.error,
    )
    if outcome.status == "failed":
        MetricsService.emit_notification_metric(
            BusinessMetric.DELIVERY_FAILED, delivery.notification_type, channel=delivery.channel
        )
    entry = {"channel": delivery.channel, "status": outcome.status}
    if device_id:
        entry["device_id"] = device_id
    if outcome.error:
        entry["error"] = outcome.error
    if outcome.provider_message_id:
        entry["provider_message_id"] = outcome.provider_message_id
    return entry


def _message_data(delivery: ChannelDeliveryPayload) -> dict[str, Any]:
    return {
        **delivery.data,
        "notification_id": delivery.notification_id,
        "type": delivery.notification_type,
    }


def deliver_push(ctx: JobContext) -> dict[str, Any]:
    """Send to every active device of the user.

    A token the gateway reports as unregistered is deactivated; a successful
    push refreshes the device's ``last_used``.
    """
    services = ctx.services
    delivery = parse_payload(ctx.queue_name, ctx.job_type, ctx.payload)
    adapter = services.adapters["push"]

    with services.session_factory() as db:
        devices = DeviceService.list_active(db, delivery.user_id)
        if not devices:
            logger.info(f"No active devices for user {delivery.user_id}; push simulated")
            outcome = DeliveryOutcome(status="simulated", error=NO_DEVICE_ERROR)
            return {"user_id": delivery.user_id, "results": [_record(db, ctx, delivery, outcome)]}

        results = []
        for device in devices:
            ctx.raise_if_cancelled()
            outcome = adapter.deliver(
                device.token, delivery.title, delivery.message, _message_data(delivery)
            )
            if outcome.invalid_destination:
                DeviceService.deactivate_token(db, device.token)
            elif outcome.status == "sent":
                DeviceService.touch(db, device.id)
            results.append(
                _record(db, ctx, delivery, outcome, device_id=device.device_id)
            )

    return {"user_id": delivery.user_id, "results": results}


def _deliver_to_address(ctx: JobContext) -> dict[str, Any]:
    services = ctx.services
    delivery = parse_payload(ctx.queue_name, ctx.job_type, ctx.payload)
    channel = delivery.channel
    adapter = services.adapters[channel]

    with services.session_factory() as db:
        address = resolve_address(db, delivery.user_id, channel)
        if address is None:
            if not adapter.is_simulated:
                error = f"No {channel} address for user {delivery.user_id}"
                _record(db, ctx, delivery, DeliveryOutcome(status="failed", error=error))
                raise PermanentFailure(error)
            address = placeholder_address(delivery.user_id, channel)

        outcome = adapter.deliver(
            address, delivery.title, delivery.message, _message_data(delivery)
        )
        result = _record(db, ctx, delivery, outcome, address=address)

    if outcome.status == "failed":
        raise PermanentFailure(f"{channel} delivery to {address} rejected: {outcome.error}")
    return {"user_id": delivery.user_id, "results": [result]}


def deliver_email(ctx: JobContext) -> dict[str, Any]:
    return _deliver_to_address(ctx)


def deliver_sms(ctx: JobContext) -> dict[str, Any]:
    return _deliver_to_address(ctx)


HANDLERS = {
    ("push", "send-push"): deliver_push,
    ("email", "send-email"): deliver_email,
    ("sms", "send-sms"): deliver_sms,
}
