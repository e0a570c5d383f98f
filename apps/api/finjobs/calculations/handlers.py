"""Job handlers for the ``calculations`` queue.

The pure calculations run process-isolated by default, so they are
module-level functions that only touch ``ctx.payload`` and
``ctx.report_progress``. Transaction analysis always runs in a thread: it
queues a follow-up notification through ``ctx.services``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from finjobs.calculations.financial import CALCULATORS, analyze_transaction, portfolio_analysis
from finjobs.jobs.exceptions import JobError
from finjobs.jobs.isolation import JobContext
from finjobs.jobs.payloads import PAYLOAD_SCHEMAS, NotificationRequest
from finjobs.notifications.service import NotificationService

logger = logging.getLogger(__name__)

QUEUE = "calculations"


def _stamp(result: dict[str, Any], calculation_type: str) -> dict[str, Any]:
    return {
        **result,
        "calculation_type": calculation_type,
        "calculated_at": datetime.now(timezone.utc).isoformat(),
    }


def run_calculation(ctx: JobContext) -> dict[str, Any]:
    """Handler for the single-formula calculation types."""
    calculator = CALCULATORS[ctx.job_type]
    ctx.report_progress(10)
    result = calculator(**ctx.payload)
    ctx.report_progress(90)
    return _stamp(result, ctx.job_type)


def run_portfolio_analysis(ctx: JobContext) -> dict[str, Any]:
    ctx.report_progress(10)
    result = portfolio_analysis(
        ctx.payload["transactions"],
        risk_free_rate=ctx.payload.get("risk_free_rate", 0.02),
        report_progress=ctx.report_progress,
    )
    return _stamp(result, ctx.job_type)


def _analysis_notification(
    user_id: str, transaction: dict[str, Any], analysis: dict[str, Any]
) -> NotificationRequest:
    alerts = analysis["alerts"]
    if alerts:
        title = "Transaction Analysis - Alerts Found"
        message = f"Analysis found {len(alerts)} alert(s) for your recent transaction."
    else:
        title = "Transaction Analysis Complete"
        amount = transaction["amount"]
        message = f"Analysis completed for your {transaction['type']} of ${amount:,.2f}"
    return NotificationRequest(
        type="transaction_alert",
        title=title,
        message=message,
        channels=["push", "websocket"],
        recipients=[user_id],
        priority=analysis["priority"],
        data={
            "transaction_id": transaction.get("id"),
            "amount": transaction["amount"],
            "alert_count": len(alerts),
            "has_alerts": bool(alerts),
            "alerts": alerts,
            "recommendations": analysis["recommendations"][:2],
        },
    )


def run_transaction_analysis(ctx: JobContext) -> dict[str, Any]:
    """Analyze one transaction and notify its owner.

    A failure to queue the notification is logged and reported in the
    result; the analysis itself still completes.
    """
    payload = ctx.payload
    ctx.report_progress(10)
    analysis = analyze_transaction(payload["transaction"], budget=payload.get("budget"))
    ctx.report_progress(60)
    ctx.raise_if_cancelled()

    notification = None
    if payload.get("notify", True) and ctx.services is not None:
        request = _analysis_notification(payload["user_id"], payload["transaction"], analysis)
        try:
            with ctx.services.session_factory() as db:
                notification = NotificationService.submit(db, ctx.services.manager, request)
        except JobError as e:
            logger.warning(f"Transaction analysis {ctx.job_id}: notification not queued: {e}")
    ctx.report_progress(90)

    return _stamp(
        {
            **analysis,
            "user_id": payload["user_id"],
            "notification_sent": notification is not None,
            "notification_job_id": notification["job_id"] if notification else None,
        },
        ctx.job_type,
    )


def _run_operation(operation: dict[str, Any]) -> dict[str, Any]:
    op_type = operation["type"]
    calculator = CALCULATORS.get(op_type)
    if calculator is None and op_type != "portfolio-analysis":
        raise ValueError(f"Unknown calculation type: {op_type}")
    schema = PAYLOAD_SCHEMAS[(QUEUE, op_type)]
    params = schema.model_validate(operation.get("params") or {}).model_dump()
    if calculator is None:
        return portfolio_analysis(params["transactions"], params["risk_free_rate"])
    return calculator(**params)


def run_bulk_calculations(ctx: JobContext) -> dict[str, Any]:
    """Run a batch of calculations; one failing operation does not fail the job.

    Each entry of ``results`` carries the operation id, ``success`` and
    either ``result`` or ``error``. Cancellation is honored between
    operations.
    """
    operations = ctx.payload["operations"]
    results = []
    for index, operation in enumerate(operations):
        ctx.raise_if_cancelled()
        op_id = operation.get("id") or str(index)
        try:
            results.append(
                {"id": op_id, "type": operation["type"], "success": True,
                 "result": _run_operation(operation)}
            )
        except (ValueError, ValidationError, ZeroDivisionError, OverflowError) as e:
            logger.info(f"Bulk job {ctx.job_id}: operation {op_id} failed: {e}")
            results.append(
                {"id": op_id, "type": operation["type"], "success": False, "error": str(e)}
            )
        ctx.report_progress(int((index + 1) / len(operations) * 100))

    succeeded = sum(1 for r in results if r["success"])
    return {
        "results": results,
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "calculated_at": datetime.now(timezone.utc).isoformat(),
    }


HANDLERS = {
    "compound-interest": run_calculation,
    "present-value": run_calculation,
    "future-value": run_calculation,
    "loan-payment": run_calculation,
    "retirement-planning": run_calculation,
    "tax-optimization": run_calculation,
    "portfolio-optimization": run_calculation,
    "portfolio-analysis": run_portfolio_analysis,
    "bulk-calculations": run_bulk_calculations,
}
