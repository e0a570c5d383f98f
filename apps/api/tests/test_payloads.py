"""Tests for job payload validation."""

from __future__ import annotations

import pytest

from finjobs.jobs.exceptions import InvalidPayload, InvalidRequest
from finjobs.jobs.payloads import validate_payload


class TestValidatePayload:
    """Test the enqueue-time payload check."""

    def test_compound_interest_defaults_to_annual_compounding(self):
        payload = validate_payload(
            "calculations", "compound-interest", {"principal": 10000, "rate": 0.07, "time": 10}
        )

        assert payload["compound_frequency"] == 1
        assert payload["principal"] == 10000.0

    def test_unknown_type_is_invalid_request(self):
        with pytest.raises(InvalidRequest) as exc_info:
            validate_payload("calculations", "mortgage-refinance", {})

        assert not isinstance(exc_info.value, InvalidPayload)

    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "loan-payment",
                {"principal": 1000, "rate": 0.05, "term": 12, "extra": 1},
            )

    def test_non_object_payload_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload("calculations", "loan-payment", ["not", "an", "object"])

    def test_non_finite_number_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "present-value",
                {"future_value": float("nan"), "rate": 0.05, "time": 1},
            )

    def test_error_details_name_the_field(self):
        with pytest.raises(InvalidPayload) as exc_info:
            validate_payload("calculations", "loan-payment", {"principal": 1000, "rate": 0.05})

        fields = [e["field"] for e in exc_info.value.details["errors"]]
        assert "term" in fields

    def test_retirement_age_before_current_age_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "retirement-planning",
                {"current_age": 50, "retirement_age": 40, "desired_income": 1000},
            )

    def test_tax_optimization_defaults(self):
        payload = validate_payload("calculations", "tax-optimization", {"income": 60000})

        assert payload["tax_brackets"] is None
        assert payload["investment_accounts"] == {
            "has_401k": False, "current_401k": 0.0, "current_ira": 0.0
        }

    def test_tax_bracket_upper_bound_must_exceed_lower(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "tax-optimization",
                {"income": 1, "tax_brackets": [{"min": 100, "max": 50, "rate": 0.1}]},
            )

    def test_portfolio_optimization_tolerance_is_closed_set(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "portfolio-optimization",
                {"holdings": [{"asset_class": "stocks", "current_value": 1}],
                 "risk_tolerance": "reckless"},
            )

    def test_transaction_analysis_requires_known_type(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "calculations",
                "transaction-analysis",
                {"user_id": "user-1", "transaction": {"amount": 10, "type": "refund"}},
            )


class TestGeneratePdfPayload:
    def test_tax_report_accepted(self):
        payload = validate_payload(
            "pdf", "generate-pdf", {"type": "tax-report", "user_id": "user_1.a-b"}
        )

        assert payload["user_id"] == "user_1.a-b"

    @pytest.mark.parametrize(
        "user_id", ["../escaped", "a/b", "..", "a\\b", "user 1", ""]
    )
    def test_unsafe_owner_rejected(self, user_id):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "pdf", "generate-pdf", {"type": "financial-summary", "user_id": user_id}
            )


class TestNotificationRequest:
    """Test notification request validation."""

    def _request(self, **overrides):
        body = {
            "type": "budget_alert",
            "title": "Budget",
            "message": "You are close to your limit",
            "channels": ["push", "email"],
            "recipients": ["user-1"],
        }
        body.update(overrides)
        return body

    def test_valid_request_normalized(self):
        payload = validate_payload("notifications", "send-notification", self._request())

        assert payload["priority"] == "normal"
        assert payload["data"] == {}

    def test_channels_and_recipients_deduplicated(self):
        payload = validate_payload(
            "notifications",
            "send-notification",
            self._request(channels=["push", "push"], recipients=["a", "b", "a"]),
        )

        assert payload["channels"] == ["push"]
        assert payload["recipients"] == ["a", "b"]

    @pytest.mark.parametrize("field", ["type", "title", "message"])
    def test_missing_required_field(self, field):
        body = self._request()
        del body[field]

        with pytest.raises(InvalidPayload):
            validate_payload("notifications", "send-notification", body)

    def test_empty_channels_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload("notifications", "send-notification", self._request(channels=[]))

    def test_empty_recipients_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload("notifications", "send-notification", self._request(recipients=[]))

    def test_unknown_channel_rejected(self):
        with pytest.raises(InvalidPayload):
            validate_payload(
                "notifications", "send-notification", self._request(channels=["fax"])
            )

    def test_scheduled_is_accepted_for_scheduled_for(self):
        payload = validate_payload(
            "notifications",
            "send-notification",
            self._request(scheduled="2026-12-01T09:00:00Z"),
        )

        assert payload["scheduled_for"].startswith("2026-12-01T09:00:00")
