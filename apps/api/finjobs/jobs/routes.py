"""Job submission, status and queue inspection routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import ValidationError

from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.config import settings
from finjobs.core.metrics_service import MetricsService
from finjobs.jobs import schemas
from finjobs.jobs.backoff import BackoffPolicy
from finjobs.jobs.dependencies import get_queue_manager
from finjobs.jobs.exceptions import InvalidRequest
from finjobs.jobs.queue import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])
queues_router = APIRouter(prefix="/queues", tags=["queues"])


def parse_submission(body: Any) -> schemas.JobSubmitRequest:
    """Validate the submission envelope; the payload itself is checked on enqueue."""
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    try:
        return schemas.JobSubmitRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequest(
            "Invalid job submission",
            {
                "errors": [
                    {
                        "field": ".".join(str(loc) for loc in err.get("loc", [])),
                        "message": err.get("msg", "Invalid value"),
                    }
                    for err in e.errors()
                ]
            },
        ) from e


@router.post(
    "/{queue_name}",
    response_model=schemas.JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_job(
    queue_name: str,
    body: Any = Body(default=None),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Queue a job; returns immediately with its id."""
    request = parse_submission(body)
    backoff = None
    if request.backoff is not None:
        backoff = BackoffPolicy(
            kind=request.backoff.kind,
            delay_ms=request.backoff.delay_ms,
            max_delay_ms=settings.backoff_max_delay_ms,
        )

    job = manager.enqueue(
        queue_name,
        request.type,
        request.payload,
        priority=request.priority,
        delay_ms=request.delay_ms,
        max_attempts=request.max_attempts,
        backoff=backoff,
        timeout_seconds=request.timeout_seconds,
    )
    MetricsService.emit_job_metric(BusinessMetric.JOB_SUBMITTED, queue_name, request.type)
    return schemas.JobSubmitResponse(
        job_id=str(job.id),
        status="scheduled" if request.delay_ms > 0 else "queued",
    )


@router.get("/{job_id}/status", response_model=schemas.JobStatusResponse)
async def get_job_status(
    job_id: str,
    manager: QueueManager = Depends(get_queue_manager),
):
    """Current state, progress and outcome of a job."""
    return schemas.job_status(manager.get_status(job_id))


@router.delete("/{job_id}", response_model=schemas.CancelResponse)
async def cancel_job(
    job_id: str,
    manager: QueueManager = Depends(get_queue_manager),
):
    """Remove a waiting job, or ask a running one to stop."""
    job = manager.get_status(job_id)
    outcome = manager.cancel(job_id)
    MetricsService.emit_job_metric(
        BusinessMetric.JOB_CANCELLED, job.queue_name, job.type, outcome=outcome
    )
    return schemas.CancelResponse(job_id=job_id, outcome=outcome)


@queues_router.get("/stats", response_model=schemas.AllQueueStatsResponse)
async def get_all_queue_stats(manager: QueueManager = Depends(get_queue_manager)):
    return schemas.AllQueueStatsResponse(
        queues=[schemas.queue_stats(name, counts) for name, counts in manager.all_stats().items()]
    )


@queues_router.get("/{queue_name}/stats", response_model=schemas.QueueStatsResponse)
async def get_queue_stats(
    queue_name: str,
    manager: QueueManager = Depends(get_queue_manager),
):
    return schemas.queue_stats(queue_name, manager.stats(queue_name))


@queues_router.get("/{queue_name}/dead-letters", response_model=schemas.DeadLetterListResponse)
async def list_dead_letters(
    queue_name: str,
    limit: int = Query(50, ge=1, le=500),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Dead-lettered jobs kept for inspection until the retention sweep."""
    jobs = manager.dead_letters(queue_name, limit=limit)
    return schemas.DeadLetterListResponse(
        queue=queue_name,
        jobs=[schemas.job_status(job) for job in jobs],
        total=len(jobs),
    )
