"""Tests for push, email and SMS delivery handlers."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from finjobs.common.models import UserContact
from finjobs.jobs.exceptions import PermanentFailure
from finjobs.jobs.isolation import JobContext
from finjobs.notifications.adapters import (
    ProviderAdapter,
    ProviderRejected,
    ProviderTransportError,
)
from finjobs.notifications.channels import deliver_email, deliver_push, deliver_sms
from finjobs.notifications.contacts import placeholder_address
from finjobs.notifications.delivery_log import DeliveryLog
from finjobs.notifications.devices import DeviceService

JOB_ID = "5f0c1c9e-6c57-4c1e-9f0c-7d3a1b2c4d5e"


def _ctx(services, channel: str, user_id: str = "user-1") -> JobContext:
    return JobContext(
        job_id=JOB_ID,
        queue_name=channel,
        job_type=f"send-{channel}",
        payload={
            "notification_id": None,
            "notification_type": "security_alert",
            "title": "New sign-in",
            "message": "A new device signed in to your account",
            "data": {"ip": "203.0.113.7"},
            "user_id": user_id,
            "channel": channel,
            "priority": "high",
        },
        services=services,
    )


def _provider_adapter(channel: str, side_effect=None, return_value="msg-1") -> ProviderAdapter:
    provider = MagicMock()
    provider.send.side_effect = side_effect
    provider.send.return_value = return_value
    return ProviderAdapter(channel, provider)


class TestSms:
    def test_simulated_sms_to_user_without_phone(self, db, services):
        result = deliver_sms(_ctx(services, "sms"))

        assert result["results"] == [{"channel": "sms", "status": "simulated"}]
        logged = DeliveryLog.for_job(db, JOB_ID)
        assert len(logged) == 1
        assert logged[0].status == "simulated"
        assert logged[0].address == placeholder_address("user-1", "sms")

    def test_provider_sends_to_known_phone(self, db, services):
        db.add(UserContact(user_id="user-1", phone="+14155550100"))
        db.commit()
        services.adapters["sms"] = _provider_adapter("sms", return_value="SM123")

        result = deliver_sms(_ctx(services, "sms"))

        assert result["results"][0]["status"] == "sent"
        assert result["results"][0]["provider_message_id"] == "SM123"
        services.adapters["sms"].provider.send.assert_called_once()
        assert services.adapters["sms"].provider.send.call_args.args[0] == "+14155550100"


class TestEmail:
    def test_missing_address_with_provider_is_permanent(self, db, services):
        services.adapters["email"] = _provider_adapter("email")

        with pytest.raises(PermanentFailure):
            deliver_email(_ctx(services, "email"))

        logged = DeliveryLog.for_job(db, JOB_ID)
        assert [r.status for r in logged] == ["failed"]
        services.adapters["email"].provider.send.assert_not_called()

    def test_rejected_email_is_permanent(self, db, services):
        db.add(UserContact(user_id="user-1", email="jo@example.com"))
        db.commit()
        services.adapters["email"] = _provider_adapter(
            "email", side_effect=ProviderRejected("SMTP 550: mailbox unavailable")
        )

        with pytest.raises(PermanentFailure, match="rejected"):
            deliver_email(_ctx(services, "email"))

        assert DeliveryLog.for_job(db, JOB_ID)[0].status == "failed"

    def test_transport_error_degrades_to_simulated(self, db, services):
        db.add(UserContact(user_id="user-1", email="jo@example.com"))
        db.commit()
        services.adapters["email"] = _provider_adapter(
            "email", side_effect=ProviderTransportError("connection refused")
        )

        result = deliver_email(_ctx(services, "email"))

        assert result["results"][0]["status"] == "simulated"
        assert result["results"][0]["error"] == "connection refused"


class TestPush:
    def test_no_devices_is_simulated(self, db, services):
        result = deliver_push(_ctx(services, "push"))

        assert result["results"] == [
            {"channel": "push", "status": "simulated", "error": "No registered device"}
        ]

    def test_sends_to_every_active_device(self, db, services):
        DeviceService.register(db, "user-1", "phone", "tok-phone", "ios")
        DeviceService.register(db, "user-1", "tablet", "tok-tablet", "android")
        services.adapters["push"] = _provider_adapter("push")

        result = deliver_push(_ctx(services, "push"))

        assert sorted(r["device_id"] for r in result["results"]) == ["phone", "tablet"]
        assert all(r["status"] == "sent" for r in result["results"])
        data = services.adapters["push"].provider.send.call_args.args[3]
        assert data["type"] == "security_alert"
        assert data["ip"] == "203.0.113.7"

    def test_unregistered_token_deactivated(self, db, services):
        DeviceService.register(db, "user-1", "phone", "tok-stale", "ios")
        services.adapters["push"] = _provider_adapter(
            "push",
            side_effect=ProviderRejected("Push token is not registered", invalid_destination=True),
        )

        result = deliver_push(_ctx(services, "push"))

        assert result["results"][0]["status"] == "failed"
        assert DeviceService.list_active(db, "user-1") == []
