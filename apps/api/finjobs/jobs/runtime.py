"""Process wiring for the job system.

The API lifespan and the worker CLI both call ``build_services`` once at
startup; the resulting ``Services`` is what handlers receive as
``ctx.services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from finjobs.calculations import handlers as calculation_handlers
from finjobs.common.db import SessionLocal
from finjobs.core.config import Settings, settings as default_settings
from finjobs.jobs.queue import QueueManager
from finjobs.jobs.worker import HandlerRegistry, WorkerPool
from finjobs.notifications import channels, dispatcher
from finjobs.notifications.adapters import Adapter, build_adapters
from finjobs.notifications.delivery_log import DeliveryLog
from finjobs.notifications.websocket import WebSocketHub
from finjobs.reports import handlers as report_handlers

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Shared collaborators handed to thread-isolated handlers."""

    manager: QueueManager
    session_factory: sessionmaker
    adapters: dict[str, Adapter]
    hub: WebSocketHub
    settings: Settings = field(default_factory=lambda: default_settings)


def build_registry(settings: Settings = default_settings) -> HandlerRegistry:
    """Register every ``(queue, type)`` handler.

    Calculations run in ``settings.calculation_isolation``; handlers that
    need the database or adapters run in threads.
    """
    registry = HandlerRegistry()
    for job_type, func in calculation_handlers.HANDLERS.items():
        registry.register(
            calculation_handlers.QUEUE, job_type, func, isolation=settings.calculation_isolation
        )
    registry.register(
        calculation_handlers.QUEUE,
        "transaction-analysis",
        calculation_handlers.run_transaction_analysis,
        isolation="thread",
    )
    registry.register("pdf", "generate-pdf", report_handlers.generate_pdf, isolation="thread")
    for job_type, func in dispatcher.HANDLERS.items():
        registry.register(dispatcher.QUEUE, job_type, func, isolation="thread")
    for (queue_name, job_type), func in channels.HANDLERS.items():
        registry.register(queue_name, job_type, func, isolation="thread")
    return registry


def build_services(
    settings: Settings = default_settings,
    session_factory: sessionmaker = SessionLocal,
    manager: Optional[QueueManager] = None,
    adapters: Optional[dict[str, Adapter]] = None,
    hub: Optional[WebSocketHub] = None,
) -> Services:
    manager = manager or QueueManager.from_settings(settings, session_factory)
    hub = hub or WebSocketHub(
        redis_url=settings.redis_url,
        channel=settings.websocket_channel,
        bridge=settings.websocket_redis_bridge,
    )
    return Services(
        manager=manager,
        session_factory=session_factory,
        adapters=adapters if adapters is not None else build_adapters(settings),
        hub=hub,
        settings=settings,
    )


def run_maintenance(services: Services) -> dict[str, Any]:
    """Retention sweep over finished jobs and the delivery log."""
    settings = services.settings
    removed = services.manager.cleanup(
        completed_retention=timedelta(hours=settings.completed_job_retention_hours),
        dead_letter_retention=timedelta(days=settings.dead_letter_retention_days),
    )
    cutoff = services.manager.store.now() - timedelta(days=settings.delivery_log_retention_days)
    with services.session_factory() as db:
        removed["delivery_results"] = DeliveryLog.purge_older_than(db, cutoff)
    return removed


def build_worker_pool(
    services: Services,
    queues: Optional[list[str]] = None,
    registry: Optional[HandlerRegistry] = None,
) -> WorkerPool:
    registry = registry or build_registry(services.settings)
    return WorkerPool(
        services.manager,
        registry,
        queues=queues,
        services=services,
        maintenance=lambda: run_maintenance(services),
        settings=services.settings,
    )
