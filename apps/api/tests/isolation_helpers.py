"""Module-level handlers for process isolation tests.

Spawned children import handlers by module path, so these cannot live inside
test functions.
"""

from __future__ import annotations

import os
import time

from finjobs.jobs.exceptions import PermanentFailure


def add_numbers(ctx):
    ctx.report_progress(50)
    return {"sum": ctx.payload["a"] + ctx.payload["b"]}


def exit_abruptly(ctx):
    os._exit(3)


def sleep_forever(ctx):
    time.sleep(60)


def reject(ctx):
    raise PermanentFailure("payload rejected by handler")


def explode(ctx):
    raise RuntimeError("numerical instability")
