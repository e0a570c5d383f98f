"""Main FastAPI application with middleware and logging setup."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from finjobs.common.db import SessionLocal
from finjobs.core.config import settings
from finjobs.core.errors import setup_error_handlers
from finjobs.core.logging import setup_logging
from finjobs.core.otel_setup import setup_opentelemetry
from finjobs.core.middleware import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    RequestLoggingMiddleware,
    setup_cors,
    setup_gzip,
    setup_rate_limiting,
)
from finjobs.jobs.routes import queues_router, router as jobs_router
from finjobs.jobs.runtime import build_services, build_worker_pool
from finjobs.notifications.delivery_log import DeliveryLog
from finjobs.notifications.routes import (
    devices_router,
    preferences_router,
    router as notifications_router,
    ws_router,
)

logger = logging.getLogger(__name__)

# API prefix constant
API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the queue manager and hub once per process; optionally run workers."""
    services = build_services(settings, session_factory=SessionLocal)
    services.hub.bind_loop(asyncio.get_running_loop())
    app.state.services = services
    app.state.queue_manager = services.manager
    app.state.websocket_hub = services.hub
    await services.hub.start_bridge()

    pool = None
    if settings.run_embedded_workers:
        pool = build_worker_pool(services)
        pool.start()
        logger.info("Embedded worker pool started")
    try:
        yield
    finally:
        if pool is not None:
            await asyncio.to_thread(pool.stop)
        await services.hub.stop_bridge()


# Setup logging before creating app
setup_logging()

# Setup OpenTelemetry (must be done before app creation)
setup_opentelemetry(component="api")

app = FastAPI(
    title=f"{settings.app_name} API",
    version="0.1.0",
    lifespan=lifespan,
)

# Setup error handlers (must be done before routes are added)
setup_error_handlers(app, debug=(settings.app_env != "production"))

# Add middleware (order matters - add in reverse order of execution)
# Last added = first executed

# 1. Request ID (first to execute, last to add)
app.add_middleware(RequestIDMiddleware)

# 2. Security Headers
app.add_middleware(SecurityHeadersMiddleware)

# 3. Request Logging (after request ID is set)
if settings.enable_request_logging:
    app.add_middleware(RequestLoggingMiddleware)

# 4. Rate Limiting
setup_rate_limiting(app)

# 5. CORS
setup_cors(app)

# 6. GZip Compression (last to execute, first to add)
if settings.enable_gzip:
    setup_gzip(app)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(queues_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)
app.include_router(devices_router, prefix=API_PREFIX)
app.include_router(preferences_router, prefix=API_PREFIX)
app.include_router(ws_router)


@app.get("/health")
async def health() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        {
            "status": "ok",
            "env": os.getenv("APP_ENV", settings.app_env),
            "version": app.version,
        }
    )


@app.get("/metrics")
async def metrics() -> JSONResponse:
    """Queue depth and delivery counters for operational polling."""
    manager = app.state.queue_manager
    with app.state.services.session_factory() as db:
        deliveries = DeliveryLog.counts_by_channel_status(db)
    return JSONResponse(
        {
            "queues": manager.all_stats(),
            "deliveries": deliveries,
            "websocket_sessions": app.state.websocket_hub.session_count,
        }
    )


@app.get(f"{API_PREFIX}/ping")
async def ping() -> dict:
    """Simple ping endpoint for connectivity checks."""
    return {"message": "pong"}


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run("finjobs.main:app", host=settings.api_host, port=settings.api_port)
