"""Tests for queue configuration and enqueue validation."""

from __future__ import annotations

import pytest

from finjobs.jobs.backoff import BackoffPolicy
from finjobs.jobs.exceptions import InvalidPayload, InvalidRequest
from finjobs.jobs.queue import MAX_DELAY_MS, build_queue_configs

COMPOUND = {"principal": 10000, "rate": 0.07, "time": 10}


class TestQueueConfigs:
    def test_default_queue_table(self, test_settings):
        configs = build_queue_configs(test_settings)

        assert set(configs) == {"calculations", "pdf", "notifications", "push", "email", "sms"}
        assert configs["calculations"].backoff.delay_ms == 1000
        assert configs["pdf"].backoff.delay_ms == 2000
        assert configs["email"].backoff.delay_ms == test_settings.default_backoff_delay_ms
        assert configs["email"].backoff.kind == "exponential"

    def test_type_timeouts_override_queue_timeout(self, test_settings):
        configs = build_queue_configs(test_settings)

        assert configs["calculations"].timeout_for("loan-payment") == 60.0
        assert configs["calculations"].timeout_for("bulk-calculations") == 120.0
        assert configs["pdf"].timeout_for("generate-pdf") == 90.0

    def test_settings_override_timeout_and_concurrency(self, test_settings):
        test_settings.queue_timeouts = {"sms": 5.0}
        test_settings.queue_concurrency = {"sms": 7}

        config = build_queue_configs(test_settings)["sms"]

        assert config.timeout_seconds == 5.0
        assert config.concurrency == 7


class TestEnqueue:
    """Test QueueManager.enqueue validation."""

    def test_defaults_applied(self, manager, test_settings):
        job = manager.enqueue("calculations", "compound-interest", COMPOUND)

        assert job.state == "waiting"
        assert job.priority == 0
        assert job.max_attempts == test_settings.default_max_attempts
        assert job.timeout_ms == 60000
        assert job.payload["compound_frequency"] == 1

    def test_per_job_backoff(self, manager):
        job = manager.enqueue(
            "pdf",
            "generate-pdf",
            {"type": "financial-summary"},
            backoff=BackoffPolicy(kind="fixed", delay_ms=250),
        )

        assert (job.backoff_kind, job.backoff_delay_ms) == ("fixed", 250)

    def test_unknown_queue(self, manager):
        with pytest.raises(InvalidRequest, match="Unknown queue"):
            manager.enqueue("reports", "generate-pdf", {})

    def test_invalid_payload_not_stored(self, manager):
        with pytest.raises(InvalidPayload):
            manager.enqueue("calculations", "loan-payment", {"principal": 1000})

        assert manager.stats("calculations")["total"] == 0

    @pytest.mark.parametrize("delay_ms", [-1, MAX_DELAY_MS + 1])
    def test_delay_bounds(self, manager, delay_ms):
        with pytest.raises(InvalidRequest, match="delay_ms"):
            manager.enqueue("calculations", "compound-interest", COMPOUND, delay_ms=delay_ms)

    @pytest.mark.parametrize("max_attempts", [0, 26])
    def test_max_attempts_bounds(self, manager, max_attempts):
        with pytest.raises(InvalidRequest, match="max_attempts"):
            manager.enqueue(
                "calculations", "compound-interest", COMPOUND, max_attempts=max_attempts
            )

    def test_negative_timeout_rejected(self, manager):
        with pytest.raises(InvalidRequest, match="timeout_seconds"):
            manager.enqueue("calculations", "compound-interest", COMPOUND, timeout_seconds=-1)

    def test_unknown_queue_stats(self, manager):
        with pytest.raises(InvalidRequest):
            manager.stats("nope")
