"""Tests for handler execution isolation."""

from __future__ import annotations

import threading
import time

import pytest

from finjobs.jobs.exceptions import (
    ExecutionCrash,
    HandlerTimeout,
    JobCancelled,
    PermanentFailure,
    TransientFailure,
)
from finjobs.jobs.isolation import JobContext, run_in_process, run_in_thread
from tests.isolation_helpers import add_numbers, exit_abruptly, explode, reject, sleep_forever


def _ctx(**kwargs) -> JobContext:
    defaults = {
        "job_id": "00000000-0000-0000-0000-000000000001",
        "queue_name": "calculations",
        "job_type": "test",
        "payload": {"a": 2, "b": 3},
    }
    defaults.update(kwargs)
    return JobContext(**defaults)


class TestRunInThread:
    """Test thread-isolated execution."""

    def test_returns_result(self):
        assert run_in_thread(add_numbers, _ctx(), timeout=5) == {"sum": 5}

    def test_handler_exception_propagates(self):
        with pytest.raises(RuntimeError):
            run_in_thread(explode, _ctx(), timeout=5)

    def test_timeout_raises_and_signals_cancel(self):
        started = threading.Event()

        def slow(ctx):
            started.set()
            ctx.cancel_event.wait(5)

        ctx = _ctx()
        with pytest.raises(HandlerTimeout):
            run_in_thread(slow, ctx, timeout=0.2)
        assert started.is_set()
        assert ctx.is_cancelled()

    def test_cancellation_forwarded_to_handler(self):
        def cooperative(ctx):
            for _ in range(100):
                ctx.raise_if_cancelled()
                time.sleep(0.05)
            return "finished"

        with pytest.raises(JobCancelled):
            run_in_thread(cooperative, _ctx(), timeout=10, poll_cancel=lambda: True)

    def test_progress_clamped(self):
        seen = []

        def handler(ctx):
            ctx.report_progress(250)
            ctx.report_progress(-5)

        run_in_thread(handler, _ctx(progress_callback=seen.append), timeout=5)

        assert seen == [100, 0]


class TestRunInProcess:
    """Test process-isolated execution."""

    def test_returns_result_and_forwards_progress(self):
        seen = []

        result = run_in_process(add_numbers, _ctx(progress_callback=seen.append), timeout=30)

        assert result == {"sum": 5}
        assert seen == [50]

    def test_dead_child_is_execution_crash(self):
        with pytest.raises(ExecutionCrash):
            run_in_process(exit_abruptly, _ctx(), timeout=30)

    def test_hung_child_is_terminated(self):
        with pytest.raises(HandlerTimeout):
            run_in_process(sleep_forever, _ctx(), timeout=3)

    def test_permanent_failure_preserved(self):
        with pytest.raises(PermanentFailure, match="payload rejected"):
            run_in_process(reject, _ctx(), timeout=30)

    def test_other_errors_are_transient(self):
        with pytest.raises(TransientFailure, match="RuntimeError"):
            run_in_process(explode, _ctx(), timeout=30)
