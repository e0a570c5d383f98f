"""Tests for the jobs and queues API."""

from __future__ import annotations

from uuid import uuid4

from fastapi.testclient import TestClient

API = "/api/v1"
COMPOUND = {"principal": 10000, "rate": 0.07, "time": 10}


class TestSubmitJob:
    """Test POST /jobs/{queue_name}."""

    def test_submit_returns_202_with_job_id(self, client: TestClient, manager):
        response = client.post(
            f"{API}/jobs/calculations",
            json={"type": "compound-interest", "payload": COMPOUND, "priority": 5},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        job = manager.get_status(body["job_id"])
        assert job.state == "waiting"
        assert job.priority == 5
        assert job.payload["compound_frequency"] == 1

    def test_delayed_submission_is_scheduled(self, client: TestClient):
        response = client.post(
            f"{API}/jobs/calculations",
            json={"type": "compound-interest", "payload": COMPOUND, "delay_ms": 60000},
        )

        assert response.status_code == 202
        assert response.json()["status"] == "scheduled"

    def test_per_job_retry_options(self, client: TestClient, manager):
        response = client.post(
            f"{API}/jobs/pdf",
            json={
                "type": "generate-pdf",
                "payload": {"type": "financial-summary"},
                "max_attempts": 5,
                "backoff": {"kind": "fixed", "delay_ms": 250},
                "timeout_seconds": 15,
            },
        )

        job = manager.get_status(response.json()["job_id"])
        assert job.max_attempts == 5
        assert job.backoff_kind == "fixed"
        assert job.backoff_delay_ms == 250
        assert job.timeout_ms == 15000

    def test_camel_case_envelope_options(self, client: TestClient, manager):
        response = client.post(
            f"{API}/jobs/calculations",
            json={
                "type": "compound-interest",
                "payload": COMPOUND,
                "delayMs": 5000,
                "maxAttempts": 2,
                "timeoutSeconds": 20,
                "backoff": {"type": "fixed", "delay": 250},
            },
        )

        assert response.status_code == 202
        assert response.json()["status"] == "scheduled"
        job = manager.get_status(response.json()["job_id"])
        assert job.max_attempts == 2
        assert job.timeout_ms == 20000
        assert job.backoff_kind == "fixed"
        assert job.backoff_delay_ms == 250

    def test_unknown_queue_is_invalid_request(self, client: TestClient):
        response = client.post(
            f"{API}/jobs/nope", json={"type": "compound-interest", "payload": COMPOUND}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    def test_unknown_type_is_invalid_request(self, client: TestClient):
        response = client.post(
            f"{API}/jobs/calculations", json={"type": "mortgage-refinance", "payload": {}}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    def test_invalid_payload(self, client: TestClient, manager):
        response = client.post(
            f"{API}/jobs/calculations",
            json={"type": "loan-payment", "payload": {"principal": 1000}},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_payload"
        assert error["request_id"]
        assert {e["field"] for e in error["details"]["errors"]} >= {"rate", "term"}
        assert manager.stats("calculations")["total"] == 0

    def test_malformed_body_is_400(self, client: TestClient):
        response = client.post(
            f"{API}/jobs/calculations",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_unknown_envelope_field_rejected(self, client: TestClient):
        response = client.post(
            f"{API}/jobs/calculations",
            json={"type": "compound-interest", "payload": COMPOUND, "callback": "x"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"


class TestJobStatus:
    """Test GET /jobs/{job_id}/status and DELETE /jobs/{job_id}."""

    def test_status_of_waiting_job(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)

        response = client.get(f"{API}/jobs/{job.id}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["job_id"] == str(job.id)
        assert body["queue"] == "calculations"
        assert body["status"] == "waiting"
        assert body["progress"] == 0
        assert body["attempts"] == 0
        assert body["created_at"].endswith("+00:00")

    def test_status_of_completed_job(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)
        claimed = manager.claim_next("calculations", "w1")
        manager.ack(claimed, {"final_amount": 19671.51})

        body = client.get(f"{API}/jobs/{job.id}/status").json()

        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["result"] == {"final_amount": 19671.51}

    def test_unknown_job_is_404(self, client: TestClient):
        response = client.get(f"{API}/jobs/{uuid4()}/status")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_job_id_is_404(self, client: TestClient):
        assert client.get(f"{API}/jobs/not-a-job/status").status_code == 404

    def test_cancel_waiting_job_removes_it(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)

        response = client.delete(f"{API}/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json() == {"job_id": str(job.id), "outcome": "removed"}
        assert client.get(f"{API}/jobs/{job.id}/status").status_code == 404

    def test_cancel_active_job_requests_stop(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)
        manager.claim_next("calculations", "w1")

        response = client.delete(f"{API}/jobs/{job.id}")

        assert response.json()["outcome"] == "cancel_requested"
        assert client.get(f"{API}/jobs/{job.id}/status").json()["cancel_requested"] is True

    def test_cancel_finished_job_conflicts(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)
        manager.ack(manager.claim_next("calculations", "w1"), {})

        response = client.delete(f"{API}/jobs/{job.id}")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"


class TestQueueStats:
    """Test the queue inspection endpoints."""

    def test_stats_for_one_queue(self, client: TestClient, manager):
        manager.enqueue("calculations", "compound-interest", COMPOUND)
        manager.enqueue("calculations", "compound-interest", COMPOUND, delay_ms=60000)

        body = client.get(f"{API}/queues/calculations/stats").json()

        assert body["queue"] == "calculations"
        assert body["waiting"] == 2
        assert body["delayed"] == 1
        assert body["active"] == 0

    def test_stats_for_all_queues(self, client: TestClient):
        body = client.get(f"{API}/queues/stats").json()

        names = {q["queue"] for q in body["queues"]}
        assert names == {"calculations", "pdf", "notifications", "push", "email", "sms"}

    def test_unknown_queue_stats(self, client: TestClient):
        assert client.get(f"{API}/queues/nope/stats").status_code == 400

    def test_dead_letters(self, client: TestClient, manager):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND, max_attempts=1)
        manager.nack(manager.claim_next("calculations", "w1"), "boom")

        body = client.get(f"{API}/queues/calculations/dead-letters").json()

        assert body["total"] == 1
        assert body["jobs"][0]["job_id"] == str(job.id)
        assert body["jobs"][0]["error"] == "boom"


class TestQueueUnavailable:
    def test_missing_manager_is_503(self, client: TestClient):
        from finjobs.main import app

        manager = app.state.queue_manager
        app.state.queue_manager = None
        try:
            response = client.get(f"{API}/queues/stats")
        finally:
            app.state.queue_manager = manager

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "queue_unavailable"
