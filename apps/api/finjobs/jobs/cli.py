"""Command-line interface for job workers.

Usage:
    python -m finjobs.jobs.cli [queue ...]

With no arguments every queue with a registered handler is served.
"""

from __future__ import annotations

import logging
import signal
import sys

from finjobs.core.config import settings
from finjobs.core.logging import setup_logging
from finjobs.core.otel_setup import setup_opentelemetry
from finjobs.jobs.runtime import build_services, build_worker_pool

logger = logging.getLogger(__name__)


def run_worker(queues: list[str] | None = None) -> None:
    """Run a worker pool until SIGINT or SIGTERM.

    Args:
        queues: Queue names to process (default: all)
    """
    setup_logging()
    setup_opentelemetry(component="worker")

    services = build_services(settings)
    pool = build_worker_pool(services, queues=queues or None)

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        pool.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.info(f"Worker serving queues: {', '.join(pool.queues)}")
    pool.start()
    pool.wait()


def main() -> None:
    run_worker(sys.argv[1:])


if __name__ == "__main__":
    main()
