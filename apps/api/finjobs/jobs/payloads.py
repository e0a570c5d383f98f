"""Typed job payloads, validated at the queue boundary.

Every ``(queue, type)`` pair accepted by the system has exactly one payload
model here. ``validate_payload`` rejects anything else before it reaches the
store, and returns the normalized JSON form that is persisted.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from finjobs.jobs.exceptions import InvalidPayload, InvalidRequest

NOTIFICATION_TYPES = (
    "transaction_alert",
    "budget_alert",
    "investment_update",
    "security_alert",
    "market_news",
    "payment_reminder",
    "goal_milestone",
    "system_notification",
)

# Used as a filename component, so no path separators or parent references
SAFE_OWNER_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")

QUEUED_CHANNELS = ("push", "email", "sms")
IN_PROCESS_CHANNELS = ("websocket", "in_app")

NotificationType = Literal[
    "transaction_alert",
    "budget_alert",
    "investment_update",
    "security_alert",
    "market_news",
    "payment_reminder",
    "goal_milestone",
    "system_notification",
]
Channel = Literal["push", "email", "sms", "websocket", "in_app"]
Priority = Literal["low", "normal", "high", "urgent"]

# Queue priority for each notification priority (higher is claimed first)
PRIORITY_LEVELS = {"low": 0, "normal": 10, "high": 20, "urgent": 30}


class _Payload(BaseModel):
    model_config = {"extra": "forbid"}


# Calculation payloads
class CompoundInterestPayload(_Payload):
    principal: float = Field(..., ge=0)
    rate: float = Field(..., ge=0)
    time: float = Field(..., gt=0)
    compound_frequency: int = Field(default=1, ge=1, le=365)


class PresentValuePayload(_Payload):
    future_value: float = Field(..., ge=0)
    rate: float = Field(..., gt=-1)
    time: float = Field(..., ge=0)


class FutureValuePayload(_Payload):
    present_value: float = Field(..., ge=0)
    rate: float = Field(..., gt=-1)
    time: float = Field(..., ge=0)
    periodic_payment: float = Field(default=0.0, ge=0)


class LoanPaymentPayload(_Payload):
    principal: float = Field(..., gt=0)
    rate: float = Field(..., ge=0)
    term: int = Field(..., gt=0, le=1200)


class RetirementPlanningPayload(_Payload):
    current_age: int = Field(..., ge=0, le=120)
    retirement_age: int = Field(..., ge=0, le=120)
    current_savings: float = Field(default=0.0, ge=0)
    monthly_contribution: float = Field(default=0.0, ge=0)
    expected_return: float = Field(default=0.07, gt=-1)
    inflation_rate: float = Field(default=0.03, gt=-1)
    desired_income: float = Field(..., ge=0)

    @field_validator("retirement_age")
    @classmethod
    def _after_current_age(cls, value: int, info):
        current = info.data.get("current_age")
        if current is not None and value < current:
            raise ValueError("retirement_age must not be before current_age")
        return value


class PortfolioTransaction(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=32)
    type: Literal["buy", "sell"]
    shares: float = Field(..., ge=0)
    price: float = Field(..., ge=0)
    date: Optional[str] = None
    current_price: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = None


class PortfolioAnalysisPayload(_Payload):
    transactions: list[PortfolioTransaction] = Field(..., min_length=1, max_length=10000)
    risk_free_rate: float = Field(default=0.02, ge=0, le=1)


class TaxBracket(BaseModel):
    min: float = Field(..., ge=0)
    max: Optional[float] = Field(default=None, ge=0)
    rate: float = Field(..., ge=0, le=1)

    @field_validator("max")
    @classmethod
    def _above_min(cls, value: Optional[float], info):
        lower = info.data.get("min")
        if value is not None and lower is not None and value <= lower:
            raise ValueError("max must be greater than min")
        return value


class InvestmentAccounts(BaseModel):
    has_401k: bool = False
    current_401k: float = Field(default=0.0, ge=0)
    current_ira: float = Field(default=0.0, ge=0)


class TaxOptimizationPayload(_Payload):
    income: float = Field(..., ge=0)
    deductions: float = Field(default=0.0, ge=0)
    tax_brackets: Optional[list[TaxBracket]] = Field(default=None, min_length=1, max_length=20)
    investment_accounts: InvestmentAccounts = Field(default_factory=InvestmentAccounts)


class OptimizationHolding(BaseModel):
    symbol: Optional[str] = Field(default=None, max_length=32)
    asset_class: str = Field(..., min_length=1)
    current_value: float = Field(..., ge=0)


class PortfolioOptimizationPayload(_Payload):
    holdings: list[OptimizationHolding] = Field(..., min_length=1, max_length=10000)
    risk_tolerance: Literal["conservative", "moderate", "aggressive"] = "moderate"
    time_horizon: Optional[int] = Field(default=None, ge=0, le=100)
    goals: list[str] = Field(default_factory=list, max_length=20)


class AnalyzedTransaction(BaseModel):
    id: Optional[str] = None
    amount: float = Field(..., ge=0)
    type: Literal["income", "expense"]
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[str] = None


class BudgetContext(BaseModel):
    monthly_limit: float = Field(..., gt=0)
    spent_this_month: float = Field(default=0.0, ge=0)


class TransactionAnalysisPayload(_Payload):
    user_id: str = Field(..., min_length=1)
    transaction: AnalyzedTransaction
    budget: Optional[BudgetContext] = None
    notify: bool = True


class BulkOperation(BaseModel):
    id: Optional[str] = None
    type: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class BulkCalculationsPayload(_Payload):
    operations: list[BulkOperation] = Field(..., min_length=1, max_length=100)


# Report payloads
class GeneratePdfPayload(_Payload):
    type: Literal[
        "transaction-statement", "portfolio-report", "financial-summary", "tax-report"
    ]
    user_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_id")
    @classmethod
    def _safe_owner(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (not SAFE_OWNER_ID.match(value) or ".." in value):
            raise ValueError("user_id may only contain letters, digits, '_', '-' and '.'")
        return value


# Notification payloads
class NotificationRequest(_Payload):
    """Logical intent to notify a set of users over a set of channels."""

    type: NotificationType
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=4000)
    channels: list[Channel] = Field(default_factory=lambda: ["push"], min_length=1)
    recipients: list[str] = Field(..., min_length=1, max_length=1000)
    data: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = "normal"
    scheduled_for: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("scheduled_for", "scheduled")
    )
    notification_id: Optional[str] = None

    @field_validator("channels", "recipients")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @field_validator("recipients")
    @classmethod
    def _non_blank(cls, value: list[str]) -> list[str]:
        if any(not r.strip() for r in value):
            raise ValueError("recipients must be non-empty user ids")
        return value


class ChannelDeliveryPayload(_Payload):
    notification_id: Optional[str] = None
    notification_type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: str = Field(..., min_length=1)
    channel: Literal["push", "email", "sms"]
    priority: Priority = "normal"


PAYLOAD_SCHEMAS: dict[tuple[str, str], type[BaseModel]] = {
    ("calculations", "compound-interest"): CompoundInterestPayload,
    ("calculations", "present-value"): PresentValuePayload,
    ("calculations", "future-value"): FutureValuePayload,
    ("calculations", "loan-payment"): LoanPaymentPayload,
    ("calculations", "retirement-planning"): RetirementPlanningPayload,
    ("calculations", "tax-optimization"): TaxOptimizationPayload,
    ("calculations", "portfolio-optimization"): PortfolioOptimizationPayload,
    ("calculations", "transaction-analysis"): TransactionAnalysisPayload,
    ("calculations", "portfolio-analysis"): PortfolioAnalysisPayload,
    ("calculations", "bulk-calculations"): BulkCalculationsPayload,
    ("pdf", "generate-pdf"): GeneratePdfPayload,
    ("notifications", "send-notification"): NotificationRequest,
    ("notifications", "scheduled-notification"): NotificationRequest,
    ("push", "send-push"): ChannelDeliveryPayload,
    ("email", "send-email"): ChannelDeliveryPayload,
    ("sms", "send-sms"): ChannelDeliveryPayload,
}


def _error_list(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(loc) for loc in err.get("loc", [])),
            "message": err.get("msg", "Invalid value"),
            "type": err.get("type", "validation_error"),
        }
        for err in exc.errors()
    ]


def ensure_serializable(payload: Any) -> None:
    """Raise InvalidPayload unless ``payload`` is a JSON object."""
    if not isinstance(payload, dict):
        raise InvalidPayload("Payload must be a JSON object")
    try:
        json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidPayload(f"Payload is not serializable: {e}") from e


def validate_payload(queue_name: str, job_type: str, payload: Any) -> dict[str, Any]:
    """Validate ``payload`` against the schema registered for ``(queue, type)``.

    Args:
        queue_name: Target queue
        job_type: Job type within the queue
        payload: Raw payload

    Returns:
        Normalized payload as plain JSON data

    Raises:
        InvalidRequest: The queue/type pair is unknown
        InvalidPayload: The payload is not serializable or fails validation
    """
    schema = PAYLOAD_SCHEMAS.get((queue_name, job_type))
    if schema is None:
        raise InvalidRequest(
            f"Unknown job type '{job_type}' for queue '{queue_name}'",
            {"queue": queue_name, "type": job_type},
        )
    ensure_serializable(payload)
    try:
        model = schema.model_validate(payload)
    except ValidationError as e:
        raise InvalidPayload(
            f"Invalid payload for {queue_name}/{job_type}",
            {"errors": _error_list(e)},
        ) from e
    return model.model_dump(mode="json")


def parse_payload(queue_name: str, job_type: str, payload: dict[str, Any]) -> BaseModel:
    """Rebuild the typed model of an already-validated payload."""
    return PAYLOAD_SCHEMAS[(queue_name, job_type)].model_validate(payload)
