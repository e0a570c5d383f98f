"""Tests for notification fan-out."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import select

from finjobs.common.models import DeliveryResult, NotificationRecord
from finjobs.jobs.exceptions import JobCancelled
from finjobs.jobs.isolation import JobContext
from finjobs.jobs.payloads import validate_payload
from finjobs.jobs.runtime import build_worker_pool
from finjobs.notifications.devices import DeviceService
from finjobs.notifications.dispatcher import fan_out, release_scheduled
from finjobs.notifications.preferences import PreferenceService


def _ctx(services, body: dict, job_type: str = "send-notification") -> JobContext:
    return JobContext(
        job_id="fan-out-job",
        queue_name="notifications",
        job_type=job_type,
        payload=validate_payload("notifications", job_type, body),
        services=services,
    )


def _request(**overrides) -> dict:
    body = {
        "type": "budget_alert",
        "title": "Budget Alert",
        "message": "You have used 85% of your groceries budget",
        "channels": ["push", "email"],
        "recipients": ["user-1"],
        "data": {"percentage": 85},
    }
    body.update(overrides)
    return body


class TestFanOut:
    """Test the send-notification handler."""

    def test_disabled_channel_is_skipped(self, db, services, manager):
        PreferenceService.update(db, "user-1", {"budget_alerts": {"email": False}})

        result = fan_out(_ctx(services, _request()))

        assert len(result["delivery_jobs"]) == 1
        assert result["skipped_channels"] == 1
        assert manager.stats("push")["waiting"] == 1
        assert manager.stats("email")["waiting"] == 0
        job = manager.get_status(result["delivery_jobs"][0])
        assert job.type == "send-push"
        assert job.payload["user_id"] == "user-1"
        assert job.payload["notification_type"] == "budget_alert"

    def test_one_job_per_recipient_and_channel(self, db, services, manager):
        result = fan_out(_ctx(services, _request(recipients=["user-1", "user-2"])))

        assert len(result["delivery_jobs"]) == 4
        assert manager.stats("push")["waiting"] == 2
        assert manager.stats("email")["waiting"] == 2

    def test_below_threshold_is_suppressed(self, db, services, manager):
        result = fan_out(_ctx(services, _request(data={"percentage": 40})))

        assert result["suppressed"] == 1
        assert result["delivery_jobs"] == []
        assert manager.stats("push")["total"] == 0

    def test_first_contact_creates_default_preferences(self, db, services):
        fan_out(_ctx(services, _request(recipients=["new-user"])))

        assert PreferenceService.get_or_create(db, "new-user").language == "en"

    def test_priority_carried_to_delivery_jobs(self, db, services, manager):
        result = fan_out(
            _ctx(services, _request(type="security_alert", channels=["sms"], priority="urgent",
                                    data={}))
        )

        job = manager.get_status(result["delivery_jobs"][0])
        assert job.queue_name == "sms"
        assert job.priority == 30

    def test_in_app_channels_go_through_hub(self, db, services, manager):
        with patch.object(services.hub, "send_to_user", return_value=True) as send:
            result = fan_out(
                _ctx(services, _request(channels=["websocket", "push"]))
            )

        assert result["in_process"] == 1
        assert len(result["delivery_jobs"]) == 1
        user_id, message = send.call_args.args
        assert user_id == "user-1"
        assert message["event"] == "notification"
        assert message["title"] == "Budget Alert"

    def test_record_marked_processed(self, db, services):
        record = NotificationRecord(
            type="budget_alert", title="t", message="m",
            channels=["push"], recipients=["user-1"], data={},
        )
        db.add(record)
        db.commit()

        fan_out(_ctx(services, _request(notification_id=str(record.id))))

        db.expire_all()
        stored = db.get(NotificationRecord, record.id)
        assert stored.status == "processed"
        assert stored.processed_at is not None

    def test_progress_reported_per_recipient(self, db, services):
        ctx = _ctx(services, _request(recipients=["a", "b", "c", "d"]))
        seen = []
        ctx.progress_callback = seen.append

        fan_out(ctx)

        assert seen == [25, 50, 75, 100]

    def test_cancellation_between_recipients(self, db, services):
        ctx = _ctx(services, _request())
        ctx.cancel_event.set()

        with pytest.raises(JobCancelled):
            fan_out(ctx)


class TestReleaseScheduled:
    """Test the scheduled-notification handler."""

    def test_enqueues_immediate_fan_out(self, db, services, manager):
        body = _request(scheduled_for="2026-12-01T09:00:00Z", priority="high")

        result = release_scheduled(_ctx(services, body, job_type="scheduled-notification"))

        job = manager.get_status(result["send_job_id"])
        assert job.type == "send-notification"
        assert job.queue_name == "notifications"
        assert job.priority == 20
        assert job.payload["scheduled_for"] is None
        assert job.payload["recipients"] == ["user-1"]


class TestDeliveryThroughWorkers:
    """Fan-out followed by channel delivery, down to the delivery log."""

    def test_disabled_channel_never_reaches_delivery_log(self, db, services, manager):
        PreferenceService.update(db, "user-1", {"budget_alerts": {"email": False}})
        DeviceService.register(db, "user-1", "phone-1", "push-token-1", "ios")
        manager.enqueue("notifications", "send-notification", _request())
        pool = build_worker_pool(services)

        for queue_name in ("notifications", "push", "email"):
            pool.drain(queue_name)

        rows = db.execute(select(DeliveryResult)).scalars().all()
        assert [row.channel for row in rows] == ["push"]
        assert rows[0].recipient == "user-1"
        assert rows[0].device_id == "phone-1"
        assert manager.stats("notifications")["completed"] == 1
        assert manager.stats("push")["completed"] == 1
        assert manager.stats("email")["total"] == 0

    def test_both_channels_delivered_when_enabled(self, db, services, manager):
        manager.enqueue("notifications", "send-notification", _request())
        pool = build_worker_pool(services)

        for queue_name in ("notifications", "push", "email"):
            pool.drain(queue_name)

        channels = db.execute(select(DeliveryResult.channel)).scalars().all()
        assert sorted(channels) == ["email", "push"]
