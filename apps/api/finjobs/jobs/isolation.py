"""Execution isolation for job handlers.

Each handler invocation runs in its own execution context with a hard
timeout, so a hung or crashing handler cannot take its worker slot (or the
pool) down with it:

- ``run_in_thread``: a dedicated daemon thread. Cheap, shares the process,
  and is right for I/O-bound handlers. A thread that overruns its timeout
  cannot be killed; it is abandoned and the job is failed.
- ``run_in_process``: a spawned child process talking over a pipe. The child
  is terminated on timeout, and a child that dies without reporting (e.g.
  killed by the OOM killer) surfaces as ``ExecutionCrash``.
"""

from __future__ import annotations

import logging
import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from finjobs.jobs.exceptions import (
    ExecutionCrash,
    HandlerTimeout,
    JobCancelled,
    PermanentFailure,
    TransientFailure,
)

logger = logging.getLogger(__name__)

# Spawned children import the handler's module fresh instead of inheriting
# the parent's threads and open database connections
_mp = multiprocessing.get_context("spawn")

CANCEL_POLL_SECONDS = 0.5


def _no_progress(percent: int) -> None:  # noqa: ARG001
    return None


@dataclass
class JobContext:
    """What a handler sees of the job it is running.

    Attributes:
        job_id: Job id as a string
        queue_name: Queue the job was claimed from
        job_type: Handler type
        payload: Validated JSON payload
        attempt: 1-based attempt number
        max_attempts: Attempt limit for the job
        services: Shared services (queue manager, adapters, hub); None in
            process-isolated handlers
    """

    job_id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    attempt: int = 1
    max_attempts: int = 1
    services: Any = None
    progress_callback: Callable[[int], None] = field(default=_no_progress, repr=False)
    cancel_event: Any = field(default_factory=threading.Event, repr=False)

    def report_progress(self, percent: int) -> None:
        self.progress_callback(max(0, min(100, int(percent))))

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise JobCancelled if cancellation was requested."""
        if self.is_cancelled():
            raise JobCancelled(f"Job {self.job_id} was cancelled")


def run_in_thread(
    handler: Callable[[JobContext], Any],
    ctx: JobContext,
    timeout: float,
    poll_cancel: Optional[Callable[[], bool]] = None,
) -> Any:
    """Run ``handler(ctx)`` on a daemon thread with a hard timeout.

    Args:
        handler: Job handler
        ctx: Context passed to the handler
        timeout: Seconds before the invocation is abandoned
        poll_cancel: Returns True once cancellation was requested; checked
            while the handler runs and forwarded to ``ctx``

    Returns:
        The handler's return value

    Raises:
        HandlerTimeout: The handler did not finish in time
        Exception: Whatever the handler raised
    """
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["result"] = handler(ctx)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(
        target=target, name=f"job-{ctx.queue_name}-{ctx.job_id[:8]}", daemon=True
    )
    deadline = time.monotonic() + timeout
    thread.start()

    while thread.is_alive():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        thread.join(min(CANCEL_POLL_SECONDS, remaining))
        if thread.is_alive() and poll_cancel is not None and not ctx.is_cancelled():
            if poll_cancel():
                logger.info(f"Cancellation requested for running job {ctx.job_id}")
                ctx.cancel_event.set()

    if thread.is_alive():
        # Ask a cooperative handler to stop; the thread itself is abandoned
        ctx.cancel_event.set()
        raise HandlerTimeout(f"Handler exceeded timeout of {timeout:g}s")

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def _child_main(conn, handler, fields: dict[str, Any], cancel_event) -> None:
    """Entry point of a process-isolated invocation."""
    ctx = JobContext(
        progress_callback=lambda pct: conn.send(("progress", pct)),
        cancel_event=cancel_event,
        **fields,
    )
    try:
        result = handler(ctx)
    except PermanentFailure as e:
        conn.send(("permanent", f"{type(e).__name__}: {e}"))
    except Exception as e:
        conn.send(("error", f"{type(e).__name__}: {e}"))
    else:
        try:
            conn.send(("ok", result))
        except Exception as e:
            conn.send(("error", f"Result could not be returned: {e}"))
    finally:
        conn.close()


def run_in_process(
    handler: Callable[[JobContext], Any],
    ctx: JobContext,
    timeout: float,
    poll_cancel: Optional[Callable[[], bool]] = None,
) -> Any:
    """Run ``handler(ctx)`` in a spawned child process with a hard timeout.

    ``handler`` must be a module-level function and the payload must be
    picklable. Progress reported by the child is forwarded to
    ``ctx.report_progress``; ``ctx.services`` is not available in the child.

    Raises:
        HandlerTimeout: The child did not finish in time and was terminated
        ExecutionCrash: The child exited without reporting a result
        PermanentFailure: The handler raised a non-retryable error
        TransientFailure: The handler raised any other error
    """
    parent_conn, child_conn = _mp.Pipe(duplex=False)
    cancel_event = _mp.Event()
    fields = {
        "job_id": ctx.job_id,
        "queue_name": ctx.queue_name,
        "job_type": ctx.job_type,
        "payload": ctx.payload,
        "attempt": ctx.attempt,
        "max_attempts": ctx.max_attempts,
    }
    process = _mp.Process(
        target=_child_main,
        args=(child_conn, handler, fields, cancel_event),
        name=f"job-{ctx.queue_name}-{ctx.job_id[:8]}",
        daemon=True,
    )
    deadline = time.monotonic() + timeout
    process.start()
    # Only the child writes; closing our copy lets recv() see EOF if it dies
    child_conn.close()

    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandlerTimeout(f"Handler exceeded timeout of {timeout:g}s")

            if parent_conn.poll(min(CANCEL_POLL_SECONDS, remaining)):
                try:
                    kind, value = parent_conn.recv()
                except EOFError:
                    process.join(1)
                    raise ExecutionCrash(
                        f"Worker process exited without a result (exit code {process.exitcode})"
                    ) from None
                if kind == "progress":
                    ctx.report_progress(value)
                    continue
                process.join(5)
                if kind == "ok":
                    return value
                if kind == "permanent":
                    raise PermanentFailure(value)
                raise TransientFailure(value)

            if not process.is_alive() and not parent_conn.poll():
                raise ExecutionCrash(
                    f"Worker process exited without a result (exit code {process.exitcode})"
                )

            if poll_cancel is not None and not cancel_event.is_set() and poll_cancel():
                logger.info(f"Cancellation requested for running job {ctx.job_id}")
                cancel_event.set()
                ctx.cancel_event.set()
    finally:
        if process.is_alive():
            process.terminate()
            process.join(5)
            if process.is_alive():
                process.kill()
                process.join()
        parent_conn.close()
