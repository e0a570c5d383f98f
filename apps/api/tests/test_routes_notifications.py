"""Tests for the notifications, devices and preferences API."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi.testclient import TestClient

from finjobs.common.models import NotificationRecord

API = "/api/v1"


def _notification(**overrides) -> dict:
    body = {
        "type": "transaction_alert",
        "title": "Large purchase",
        "message": "A purchase of $1,250.00 was made with your card",
        "channels": ["push", "email"],
        "recipients": ["user-1"],
        "data": {"amount": 1250},
    }
    body.update(overrides)
    return body


class TestSendNotification:
    """Test POST /notifications/send."""

    def test_send_queues_fan_out(self, client: TestClient, user_headers, manager, db):
        response = client.post(
            f"{API}/notifications/send", json=_notification(priority="high"), headers=user_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        job = manager.get_status(body["job_id"])
        assert job.queue_name == "notifications"
        assert job.type == "send-notification"
        assert job.priority == 20
        assert job.payload["notification_id"] == body["notification_id"]

        record = db.get(NotificationRecord, UUID(body["notification_id"]))
        assert record.sender_id == "user-1"
        assert str(record.job_id) == body["job_id"]

    def test_future_schedule_delays_job(self, client: TestClient, user_headers, manager):
        scheduled_for = datetime.now(timezone.utc) + timedelta(hours=2)

        response = client.post(
            f"{API}/notifications/send",
            json=_notification(scheduled_for=scheduled_for.isoformat()),
            headers=user_headers,
        )

        body = response.json()
        assert body["status"] == "scheduled"
        job = manager.get_status(body["job_id"])
        assert job.type == "scheduled-notification"
        assert manager.stats("notifications")["delayed"] == 1

    def test_scheduled_key_delays_job(self, client: TestClient, user_headers, manager):
        scheduled = datetime.now(timezone.utc) + timedelta(hours=1)
        request = _notification()
        request["scheduled"] = scheduled.isoformat()

        response = client.post(f"{API}/notifications/send", json=request, headers=user_headers)

        body = response.json()
        assert body["status"] == "scheduled"
        assert manager.get_status(body["job_id"]).type == "scheduled-notification"

    def test_past_schedule_sends_now(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/notifications/send",
            json=_notification(scheduled_for="2020-01-01T00:00:00Z"),
            headers=user_headers,
        )

        assert response.json()["status"] == "queued"

    def test_missing_title_is_400(self, client: TestClient, user_headers, manager):
        body = _notification()
        del body["title"]

        response = client.post(f"{API}/notifications/send", json=body, headers=user_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_payload"
        assert manager.stats("notifications")["total"] == 0

    def test_empty_recipients_is_400(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/notifications/send", json=_notification(recipients=[]), headers=user_headers
        )

        assert response.status_code == 400

    def test_empty_channels_is_400(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/notifications/send", json=_notification(channels=[]), headers=user_headers
        )

        assert response.status_code == 400

    def test_requires_user_header(self, client: TestClient):
        response = client.post(f"{API}/notifications/send", json=_notification())

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestBulkAndHistory:
    """Test bulk submission, history and status lookup."""

    def test_bulk_submits_each_request(self, client: TestClient, user_headers, manager):
        response = client.post(
            f"{API}/notifications/bulk",
            json={"notifications": [_notification(), _notification(type="market_news")]},
            headers=user_headers,
        )

        assert response.status_code == 200
        assert response.json()["total"] == 2
        assert manager.stats("notifications")["waiting"] == 2

    def test_bulk_is_all_or_nothing_on_validation(self, client: TestClient, user_headers, manager):
        response = client.post(
            f"{API}/notifications/bulk",
            json={"notifications": [_notification(), _notification(channels=[])]},
            headers=user_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["index"] == 1
        assert manager.stats("notifications")["total"] == 0

    def test_bulk_limit(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/notifications/bulk",
            json={"notifications": [_notification()] * 101},
            headers=user_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    def test_history_includes_sent_and_received(self, client: TestClient, user_headers):
        client.post(
            f"{API}/notifications/send",
            json=_notification(recipients=["user-2"]),
            headers=user_headers,
        )
        client.post(
            f"{API}/notifications/send",
            json=_notification(recipients=["user-1"]),
            headers={"X-User-ID": "user-3"},
        )
        client.post(
            f"{API}/notifications/send",
            json=_notification(recipients=["user-10"]),
            headers={"X-User-ID": "user-3"},
        )

        body = client.get(f"{API}/notifications/history", headers=user_headers).json()

        assert body["total"] == 2
        assert body["page"] == 1
        assert all(n["created_at"] for n in body["notifications"])

    def test_status_of_fan_out_job(self, client: TestClient, user_headers):
        job_id = client.post(
            f"{API}/notifications/send", json=_notification(), headers=user_headers
        ).json()["job_id"]

        body = client.get(f"{API}/notifications/{job_id}/status").json()

        assert body["job_id"] == job_id
        assert body["status"] == "waiting"


class TestDevices:
    """Test device registration routes."""

    def test_register_list_and_unregister(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/devices/register",
            json={"device_id": "phone-1", "token": "tok-1", "platform": "ios",
                  "app_version": "2.3.0"},
            headers=user_headers,
        )
        assert response.status_code == 201
        assert response.json()["is_active"] is True

        listed = client.get(f"{API}/devices", headers=user_headers).json()
        assert [d["device_id"] for d in listed["devices"]] == ["phone-1"]

        removed = client.delete(f"{API}/devices/phone-1", headers=user_headers)
        assert removed.status_code == 200
        assert removed.json()["is_active"] is False
        assert client.get(f"{API}/devices", headers=user_headers).json()["total"] == 0

    def test_unknown_platform_rejected(self, client: TestClient, user_headers):
        response = client.post(
            f"{API}/devices/register",
            json={"device_id": "d", "token": "t", "platform": "symbian"},
            headers=user_headers,
        )

        assert response.status_code == 422

    def test_unregister_unknown_device(self, client: TestClient, user_headers):
        response = client.delete(f"{API}/devices/nope", headers=user_headers)

        assert response.status_code == 404


class TestPreferences:
    """Test preference routes."""

    def test_defaults_on_first_read(self, client: TestClient, user_headers):
        body = client.get(f"{API}/preferences/user-1", headers=user_headers).json()

        assert body["language"] == "en"
        assert body["preferences"]["budget_alerts"]["warning_threshold"] == 80

    def test_partial_update_is_merged(self, client: TestClient, user_headers):
        response = client.put(
            f"{API}/preferences/user-1",
            json={"preferences": {"budget_alerts": {"email": False}}, "language": "es"},
            headers=user_headers,
        )

        body = response.json()
        assert body["language"] == "es"
        assert body["preferences"]["budget_alerts"]["email"] is False
        assert body["preferences"]["budget_alerts"]["push"] is True

    def test_unsupported_language(self, client: TestClient, user_headers):
        response = client.put(
            f"{API}/preferences/user-1", json={"language": "xx"}, headers=user_headers
        )

        assert response.status_code == 422

    def test_other_users_preferences_forbidden(self, client: TestClient, user_headers):
        response = client.get(f"{API}/preferences/user-2", headers=user_headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestOperationalEndpoints:
    def test_health(self, client: TestClient):
        assert client.get("/health").json()["status"] == "ok"

    def test_metrics_reports_queues_and_sessions(self, client: TestClient, manager):
        manager.enqueue("pdf", "generate-pdf", {"type": "financial-summary"})

        body = client.get("/metrics").json()

        assert body["queues"]["pdf"]["waiting"] == 1
        assert body["deliveries"] == {}
        assert body["websocket_sessions"] == 0
