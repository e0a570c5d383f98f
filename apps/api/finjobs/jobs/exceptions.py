"""Job pipeline error taxonomy.

Submission errors (``InvalidRequest`` and ``InvalidPayload``) are raised
before anything reaches the queue. Handler errors are split into retryable
(``TransientFailure``) and non-retryable (``PermanentFailure``) failures;
the worker pool converts them into ``nack`` calls.
"""

from __future__ import annotations

from typing import Any


class JobError(Exception):
    """Base class for job pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidRequest(JobError):
    """Client request is malformed; rejected before queueing."""


class InvalidPayload(InvalidRequest):
    """Job payload is not serializable or does not match its schema."""


class QueueUnavailable(JobError):
    """Backing store could not be reached."""


class JobNotFound(JobError):
    """No job exists with the given id."""

    def __init__(self, job_id: Any):
        self.job_id = str(job_id)
        super().__init__(f"Job not found: {job_id}", {"job_id": str(job_id)})


class JobStateConflict(JobError):
    """Requested operation is not valid for the job's current state."""


class TransientFailure(JobError):
    """Retryable failure (network error, timeout, provider 5xx)."""


class HandlerTimeout(TransientFailure):
    """Handler exceeded its hard timeout."""


class ExecutionCrash(TransientFailure):
    """Execution context died without reporting a result."""


class PermanentFailure(JobError):
    """Non-retryable failure; the job is dead-lettered immediately."""


class JobCancelled(PermanentFailure):
    """Handler stopped after observing a cancellation request."""
