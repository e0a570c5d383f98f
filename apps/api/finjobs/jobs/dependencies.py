"""FastAPI dependencies for queue access."""

from __future__ import annotations

from fastapi import Request

from finjobs.jobs.exceptions import QueueUnavailable
from finjobs.jobs.queue import QueueManager


def get_queue_manager(request: Request) -> QueueManager:
    """Return the QueueManager built in the application lifespan."""
    manager = getattr(request.app.state, "queue_manager", None)
    if manager is None:
        raise QueueUnavailable("Queue manager is not initialized")
    return manager
