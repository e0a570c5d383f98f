"""Logical job queues over the queue store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from finjobs.common.models import utcnow
from finjobs.core.config import Settings
from finjobs.core.otel_metrics import emit_job_event
from finjobs.jobs.backoff import BackoffPolicy
from finjobs.jobs.exceptions import InvalidRequest
from finjobs.jobs.payloads import validate_payload
from finjobs.jobs.store import JobRecord, QueueStore

logger = logging.getLogger(__name__)

MAX_DELAY_MS = 30 * 24 * 3600 * 1000
MAX_ATTEMPTS_LIMIT = 25

# Per-queue retry and timeout defaults; settings and per-job options override
DEFAULT_QUEUE_POLICIES: dict[str, dict[str, Any]] = {
    "calculations": {"backoff_delay_ms": 1000, "timeout_seconds": 60.0},
    "pdf": {"backoff_delay_ms": 2000, "timeout_seconds": 30.0},
    "notifications": {"timeout_seconds": 30.0},
    "push": {"timeout_seconds": 30.0},
    "email": {"timeout_seconds": 30.0},
    "sms": {"timeout_seconds": 30.0},
}

# Job types that need longer than their queue's default
TYPE_TIMEOUTS: dict[tuple[str, str], float] = {
    ("calculations", "bulk-calculations"): 120.0,
    ("pdf", "generate-pdf"): 90.0,
}


@dataclass(frozen=True)
class QueueConfig:
    """Static configuration of one logical queue."""

    name: str
    concurrency: int
    max_attempts: int
    backoff: BackoffPolicy
    timeout_seconds: float

    def timeout_for(self, job_type: str) -> float:
        return TYPE_TIMEOUTS.get((self.name, job_type), self.timeout_seconds)


def build_queue_configs(settings: Settings) -> dict[str, QueueConfig]:
    """Build the queue table from defaults and settings overrides."""
    configs = {}
    for name, policy in DEFAULT_QUEUE_POLICIES.items():
        timeout = settings.queue_timeouts.get(
            name, policy.get("timeout_seconds", settings.handler_timeout_seconds)
        )
        configs[name] = QueueConfig(
            name=name,
            concurrency=settings.concurrency_for(name),
            max_attempts=settings.default_max_attempts,
            backoff=BackoffPolicy(
                kind="exponential",
                delay_ms=policy.get("backoff_delay_ms", settings.default_backoff_delay_ms),
                max_delay_ms=settings.backoff_max_delay_ms,
            ),
            timeout_seconds=timeout,
        )
    return configs


class QueueManager:
    """Entry point for every queue operation.

    Constructed once per process (API lifespan or worker CLI) and handed to
    routes, handlers and the worker pool; there are no module-level queues.
    """

    def __init__(self, store: QueueStore, configs: dict[str, QueueConfig]):
        self.store = store
        self.configs = configs

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ) -> "QueueManager":
        store = QueueStore(
            session_factory,
            clock=clock,
            reclaim_grace_seconds=settings.reclaim_grace_seconds,
            max_backoff_ms=settings.backoff_max_delay_ms,
        )
        return cls(store, build_queue_configs(settings))

    @property
    def queue_names(self) -> list[str]:
        return list(self.configs)

    def config(self, queue_name: str) -> QueueConfig:
        try:
            return self.configs[queue_name]
        except KeyError:
            raise InvalidRequest(
                f"Unknown queue: {queue_name}", {"queues": self.queue_names}
            ) from None

    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        priority: Optional[int] = None,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        timeout_seconds: Optional[float] = None,
    ) -> JobRecord:
        """Validate and store a job.

        Args:
            queue_name: Target queue
            job_type: Handler type within the queue
            payload: JSON payload, validated against the type's schema
            priority: Higher values are claimed first (default 0)
            delay_ms: Milliseconds before the job becomes claimable
            max_attempts: Overrides the queue default
            backoff: Overrides the queue's backoff policy
            timeout_seconds: Overrides the handler timeout

        Returns:
            The stored job

        Raises:
            InvalidRequest: Unknown queue/type or invalid options
            InvalidPayload: Payload not serializable or invalid
            QueueUnavailable: Backing store unreachable
        """
        config = self.config(queue_name)
        normalized = validate_payload(queue_name, job_type, payload)

        if delay_ms is None:
            delay_ms = 0
        if delay_ms < 0 or delay_ms > MAX_DELAY_MS:
            raise InvalidRequest(f"delay_ms must be between 0 and {MAX_DELAY_MS}")
        attempts = config.max_attempts if max_attempts is None else max_attempts
        if attempts < 1 or attempts > MAX_ATTEMPTS_LIMIT:
            raise InvalidRequest(
                f"max_attempts must be between 1 and {MAX_ATTEMPTS_LIMIT}"
            )
        timeout = timeout_seconds or config.timeout_for(job_type)
        if timeout <= 0:
            raise InvalidRequest("timeout_seconds must be positive")

        job = self.store.add(
            queue_name=queue_name,
            job_type=job_type,
            payload=normalized,
            priority=priority or 0,
            delay_ms=delay_ms,
            max_attempts=attempts,
            backoff=backoff or config.backoff,
            timeout_ms=int(timeout * 1000),
        )
        logger.info(
            f"Enqueued job {job.id} ({queue_name}/{job_type}) "
            f"priority={job.priority} delay_ms={delay_ms}"
        )
        emit_job_event("enqueued", queue_name, job_type)
        return job

    def claim_next(self, queue_name: str, worker_id: str) -> Optional[JobRecord]:
        self.config(queue_name)
        return self.store.claim_next(queue_name, worker_id)

    def report_progress(self, job_id: UUID | str, percent: int) -> bool:
        return self.store.report_progress(job_id, percent)

    def ack(
        self, job: JobRecord, result: Any = None, worker_id: Optional[str] = None
    ) -> bool:
        acked = self.store.ack(job.id, result, worker_id=worker_id)
        if acked:
            emit_job_event("completed", job.queue_name, job.type)
        else:
            logger.info(f"Ack for job {job.id} ignored; job no longer active")
        return acked

    def nack(
        self,
        job: JobRecord,
        error: str,
        retryable: bool = True,
        worker_id: Optional[str] = None,
    ) -> Optional[str]:
        new_state = self.store.nack(job.id, error, retryable=retryable, worker_id=worker_id)
        if new_state == "waiting":
            logger.warning(
                f"Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, "
                f"will retry: {error}"
            )
            emit_job_event("retried", job.queue_name, job.type)
        elif new_state == "dead_lettered":
            logger.error(
                f"Job {job.id} dead-lettered after {job.attempts} attempt(s): {error}"
            )
            emit_job_event("dead_lettered", job.queue_name, job.type)
        return new_state

    def get_status(self, job_id: UUID | str) -> JobRecord:
        return self.store.get(job_id)

    def cancel(self, job_id: UUID | str) -> str:
        outcome = self.store.cancel(job_id)
        logger.info(f"Cancel job {job_id}: {outcome}")
        return outcome

    def is_cancel_requested(self, job_id: UUID | str) -> bool:
        return self.store.is_cancel_requested(job_id)

    def stats(self, queue_name: str) -> dict[str, int]:
        self.config(queue_name)
        return self.store.counts(queue_name)

    def all_stats(self) -> dict[str, dict[str, int]]:
        return {name: self.store.counts(name) for name in self.queue_names}

    def dead_letters(self, queue_name: str, limit: int = 50) -> list[JobRecord]:
        self.config(queue_name)
        return self.store.list_jobs(queue_name, state="dead_lettered", limit=limit)

    def reclaim_expired(self) -> list[tuple[UUID, str]]:
        reclaimed = self.store.reclaim_expired()
        for _, new_state in reclaimed:
            emit_job_event("reclaimed", "*", new_state)
        return reclaimed

    def cleanup(
        self, completed_retention: timedelta, dead_letter_retention: timedelta
    ) -> dict[str, int]:
        now = self.store.now()
        removed = self.store.cleanup(
            completed_before=now - completed_retention,
            dead_lettered_before=now - dead_letter_retention,
        )
        if removed["completed"] or removed["dead_lettered"]:
            logger.info(
                f"Cleaned {removed['completed']} completed and "
                f"{removed['dead_lettered']} dead-lettered jobs"
            )
        return removed
