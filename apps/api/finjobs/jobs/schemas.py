"""Pydantic schemas for the jobs and queues API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

from finjobs.jobs.store import JobRecord


class BackoffOptions(BaseModel):
    model_config = {"populate_by_name": True}

    kind: Literal["exponential", "fixed"] = Field(
        default="exponential", validation_alias=AliasChoices("kind", "type")
    )
    delay_ms: int = Field(..., ge=0, validation_alias=AliasChoices("delay_ms", "delayMs", "delay"))


class JobSubmitRequest(BaseModel):
    """Body of ``POST /jobs/{queue_name}``."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=0, le=1000)
    delay_ms: int = Field(default=0, ge=0, validation_alias=AliasChoices("delay_ms", "delayMs"))
    max_attempts: Optional[int] = Field(
        default=None, ge=1, validation_alias=AliasChoices("max_attempts", "maxAttempts")
    )
    backoff: Optional[BackoffOptions] = None
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds")
    )


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str  # queued or scheduled


class JobStatusResponse(BaseModel):
    """Job record as exposed to clients; claim and lease fields are internal."""

    job_id: str
    queue: str
    type: str
    status: str
    progress: int
    attempts: int
    max_attempts: int
    priority: int
    result: Any = None
    error: Optional[str] = None
    cancel_requested: bool = False
    created_at: str
    ready_at: str
    processed_at: Optional[str] = None
    finished_at: Optional[str] = None


class CancelResponse(BaseModel):
    job_id: str
    outcome: str  # removed or cancel_requested


class QueueStatsResponse(BaseModel):
    queue: str
    waiting: int
    delayed: int
    failed: int
    active: int
    completed: int
    dead_lettered: int


class AllQueueStatsResponse(BaseModel):
    queues: list[QueueStatsResponse]


class DeadLetterListResponse(BaseModel):
    queue: str
    jobs: list[JobStatusResponse]
    total: int


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands back naive datetimes; every stored time is UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def job_status(job: JobRecord) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=str(job.id),
        queue=job.queue_name,
        type=job.type,
        status=job.state,
        progress=job.progress,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        priority=job.priority,
        result=job.result,
        error=job.last_error,
        cancel_requested=job.cancel_requested,
        created_at=isoformat_utc(job.created_at),
        ready_at=isoformat_utc(job.ready_at),
        processed_at=isoformat_utc(job.processed_at),
        finished_at=isoformat_utc(job.finished_at),
    )


def queue_stats(queue_name: str, counts: dict[str, int]) -> QueueStatsResponse:
    return QueueStatsResponse(queue=queue_name, **counts)
