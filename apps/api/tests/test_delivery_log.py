"""Tests for the delivery log and address lookup."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from finjobs.common.models import UserContact, utcnow
from finjobs.notifications.contacts import placeholder_address, resolve_address
from finjobs.notifications.delivery_log import DeliveryLog


class TestDeliveryLog:
    """Test DeliveryLog operations."""

    def test_append_and_query_by_job_and_notification(self, db):
        job_id = uuid4()
        notification_id = uuid4()
        DeliveryLog.append(
            db, channel="email", recipient="user-1", status="sent",
            job_id=job_id, notification_id=str(notification_id), address="a@b.test",
        )
        DeliveryLog.append(db, channel="push", recipient="user-1", status="simulated")

        assert [r.channel for r in DeliveryLog.for_job(db, job_id)] == ["email"]
        assert len(DeliveryLog.for_notification(db, notification_id)) == 1

    def test_malformed_ids_stored_as_null(self, db):
        row = DeliveryLog.append(
            db, channel="sms", recipient="user-1", status="failed", job_id="not-a-uuid"
        )

        assert row.job_id is None

    def test_mark_delivered_only_from_sent(self, db):
        sent = DeliveryLog.append(db, channel="email", recipient="u", status="sent")
        failed = DeliveryLog.append(db, channel="email", recipient="u", status="failed")

        assert DeliveryLog.mark_delivered(db, sent.id) is True
        assert DeliveryLog.mark_delivered(db, failed.id) is False

    def test_counts_by_channel_status(self, db):
        DeliveryLog.append(db, channel="email", recipient="u", status="sent")
        DeliveryLog.append(db, channel="email", recipient="u", status="sent")
        DeliveryLog.append(db, channel="sms", recipient="u", status="failed")

        assert DeliveryLog.counts_by_channel_status(db) == {
            "email": {"sent": 2},
            "sms": {"failed": 1},
        }

    def test_purge_older_than(self, db):
        DeliveryLog.append(db, channel="email", recipient="u", status="sent")

        assert DeliveryLog.purge_older_than(db, utcnow() - timedelta(days=1)) == 0
        assert DeliveryLog.purge_older_than(db, utcnow() + timedelta(seconds=1)) == 1


class TestContacts:
    def test_resolve_address(self, db):
        db.add(UserContact(user_id="user-1", email="jo@example.com", phone="+14155550100"))
        db.commit()

        assert resolve_address(db, "user-1", "email") == "jo@example.com"
        assert resolve_address(db, "user-1", "sms") == "+14155550100"
        assert resolve_address(db, "user-2", "email") is None

    def test_placeholder_is_stable(self):
        assert placeholder_address("user-1", "email") == "user-1@finance-app.com"
        phone = placeholder_address("user-1", "sms")
        assert phone == placeholder_address("user-1", "sms")
        assert phone.startswith("+1555") and len(phone) == 12
