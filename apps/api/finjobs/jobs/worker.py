"""Worker pool: fixed execution slots per queue.

Every queue gets ``concurrency`` slot threads. A slot claims one job at a
time, runs its handler inside an isolated execution context, and converts
the outcome into exactly one ``ack`` or ``nack``. Nothing a handler does can
escape the slot: exceptions, timeouts and crashed child processes all end as
a ``nack``. A supervisor thread returns jobs whose lease expired (their slot
or process died before ack/nack) and runs periodic cleanup.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from finjobs.core.config import Settings, settings as default_settings
from finjobs.core.otel_metrics import emit_job_duration
from finjobs.jobs.exceptions import (
    PermanentFailure,
    QueueUnavailable,
    TransientFailure,
)
from finjobs.jobs.isolation import JobContext, run_in_process, run_in_thread
from finjobs.jobs.queue import QueueManager
from finjobs.jobs.store import JobRecord

logger = logging.getLogger(__name__)

ISOLATION_MODES = ("thread", "process")


@dataclass(frozen=True)
class JobHandler:
    func: Callable[[JobContext], Any]
    isolation: str = "thread"


class HandlerRegistry:
    """Maps ``(queue, type)`` to the handler that runs it."""

    def __init__(self):
        self._handlers: dict[tuple[str, str], JobHandler] = {}

    def register(
        self,
        queue_name: str,
        job_type: str,
        func: Callable[[JobContext], Any],
        isolation: str = "thread",
    ) -> None:
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"Unknown isolation mode: {isolation}")
        self._handlers[(queue_name, job_type)] = JobHandler(func, isolation)

    def get(self, queue_name: str, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get((queue_name, job_type))

    def queues(self) -> list[str]:
        return sorted({queue for queue, _ in self._handlers})

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._handlers


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class WorkerPool:
    """Runs handlers for one or more queues.

    Args:
        manager: Queue manager shared with the API
        registry: Handlers by ``(queue, type)``
        queues: Queues to serve (default: every queue with a handler)
        services: Object exposed to handlers as ``ctx.services``
        maintenance: Called periodically by the supervisor for cleanup
        settings: Poll and supervision intervals
    """

    def __init__(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        queues: Optional[Iterable[str]] = None,
        services: Any = None,
        maintenance: Optional[Callable[[], Any]] = None,
        settings: Settings = default_settings,
    ):
        self.manager = manager
        self.registry = registry
        self.queues = list(queues) if queues else registry.queues()
        for name in self.queues:
            manager.config(name)
        self.services = services
        self.maintenance = maintenance
        self.settings = settings
        self.name = f"{socket.gethostname()}:{os.getpid()}"
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # Lifecycle

    def start(self) -> None:
        """Start every slot thread and the supervisor."""
        if self._threads:
            return
        self._stop_event.clear()
        for queue_name in self.queues:
            slots = self.manager.config(queue_name).concurrency
            for slot in range(slots):
                worker_id = f"{self.name}:{queue_name}:{slot}"
                thread = threading.Thread(
                    target=self._slot_loop,
                    args=(queue_name, worker_id),
                    name=f"slot-{queue_name}-{slot}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
            logger.info(f"Started {slots} slot(s) for queue {queue_name}")

        supervisor = threading.Thread(
            target=self._supervise, name="worker-supervisor", daemon=True
        )
        supervisor.start()
        self._threads.append(supervisor)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop claiming new jobs and wait for running slots to finish."""
        logger.info("Stopping worker pool...")
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            # Their jobs are recovered by lease expiry
            logger.warning(f"Slots still busy at shutdown: {still_running}")
        self._threads = []
        logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def wait(self) -> None:
        """Block until ``stop`` is called (used by the CLI)."""
        while not self._stop_event.wait(1.0):
            pass

    # Slots

    def _slot_loop(self, queue_name: str, worker_id: str) -> None:
        poll = self.settings.worker_poll_interval_seconds
        failures = 0
        logger.info(f"Slot {worker_id} started")
        while not self._stop_event.is_set():
            try:
                processed = self.run_once(queue_name, worker_id)
                failures = 0
            except QueueUnavailable as e:
                failures += 1
                delay = min(
                    poll * (2 ** min(failures, 10)),
                    self.settings.worker_max_poll_backoff_seconds,
                )
                logger.warning(
                    f"Slot {worker_id}: queue store unavailable ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                self._stop_event.wait(delay)
                continue
            except Exception as e:
                logger.error(f"Slot {worker_id} error: {e}", exc_info=True)
                processed = False
            if not processed:
                self._stop_event.wait(poll)
        logger.info(f"Slot {worker_id} stopped")

    def run_once(self, queue_name: str, worker_id: Optional[str] = None) -> bool:
        """Claim and execute at most one job.

        Returns:
            True if a job was claimed
        """
        worker_id = worker_id or f"{self.name}:{queue_name}:inline"
        job = self.manager.claim_next(queue_name, worker_id)
        if job is None:
            return False
        self.execute(job, worker_id)
        return True

    def drain(self, queue_name: str, limit: int = 100) -> int:
        """Run ready jobs of one queue in the calling thread until none are left."""
        count = 0
        while count < limit and self.run_once(queue_name):
            count += 1
        return count

    def execute(self, job: JobRecord, worker_id: str) -> Optional[str]:
        """Run a claimed job and record its outcome.

        Returns:
            The job's new state, or None if the store ignored the outcome
            (the claim was lost to reclaim in the meantime)
        """
        handler = self.registry.get(job.queue_name, job.type)
        if handler is None:
            return self.manager.nack(
                job,
                f"PermanentFailure: no handler registered for {job.queue_name}/{job.type}",
                retryable=False,
                worker_id=worker_id,
            )

        ctx = JobContext(
            job_id=str(job.id),
            queue_name=job.queue_name,
            job_type=job.type,
            payload=job.payload,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            services=self.services,
            progress_callback=lambda pct: self._report_progress(job, pct),
        )
        runner = run_in_process if handler.isolation == "process" else run_in_thread
        timeout = job.timeout_ms / 1000.0

        logger.info(
            f"Running job {job.id} ({job.queue_name}/{job.type}) "
            f"attempt {job.attempts}/{job.max_attempts}",
            extra={"job_id": str(job.id), "queue": job.queue_name, "worker_id": worker_id},
        )
        started = time.monotonic()
        outcome = "completed"
        try:
            result = runner(
                handler.func,
                ctx,
                timeout,
                poll_cancel=lambda: self.manager.is_cancel_requested(job.id),
            )
            result = self._check_result(result)
        except PermanentFailure as e:
            outcome = "permanent_failure"
            return self.manager.nack(job, _describe(e), retryable=False, worker_id=worker_id)
        except TransientFailure as e:
            outcome = "transient_failure"
            return self.manager.nack(job, _describe(e), retryable=True, worker_id=worker_id)
        except Exception as e:
            outcome = "error"
            logger.warning(f"Handler for job {job.id} raised: {_describe(e)}", exc_info=True)
            return self.manager.nack(job, _describe(e), retryable=True, worker_id=worker_id)
        finally:
            emit_job_duration(
                job.queue_name, job.type, (time.monotonic() - started) * 1000, outcome
            )

        if self.manager.ack(job, result, worker_id=worker_id):
            return "completed"
        return None

    @staticmethod
    def _check_result(result: Any) -> Any:
        try:
            json.dumps(result, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise PermanentFailure(f"Handler result is not JSON serializable: {e}") from e
        return result

    def _report_progress(self, job: JobRecord, percent: int) -> None:
        try:
            self.manager.report_progress(job.id, percent)
        except QueueUnavailable as e:
            # Progress is advisory; the job keeps running
            logger.warning(f"Could not record progress for job {job.id}: {e}")

    # Supervision

    def supervise_once(self) -> list:
        """Reclaim jobs whose lease expired without ack or nack."""
        reclaimed = self.manager.reclaim_expired()
        if reclaimed:
            logger.warning(f"Supervisor reclaimed {len(reclaimed)} expired job(s)")
        return reclaimed

    def _supervise(self) -> None:
        reclaim_every = self.settings.reclaim_interval_seconds
        cleanup_every = self.settings.cleanup_interval_seconds
        next_cleanup = time.monotonic() + cleanup_every
        while not self._stop_event.wait(reclaim_every):
            try:
                self.supervise_once()
                if self.maintenance is not None and time.monotonic() >= next_cleanup:
                    next_cleanup = time.monotonic() + cleanup_every
                    self.maintenance()
            except QueueUnavailable as e:
                logger.warning(f"Supervisor: queue store unavailable ({e})")
            except Exception as e:
                logger.error(f"Supervisor error: {e}", exc_info=True)
