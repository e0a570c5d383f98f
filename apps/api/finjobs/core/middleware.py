"""FastAPI middleware for request processing, logging, and security."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

import redis.asyncio as aioredis
from fastapi import Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from finjobs.core.config import settings
from finjobs.core.otel_metrics import (
    decrement_active_requests,
    emit_http_request,
    increment_active_requests,
)

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-ID"
EXCLUDED_PATHS = ["/health", "/metrics", "/docs", "/openapi.json", "/redoc"]

# Redis connection for rate limiting (lazy initialization)
_redis_pool: aioredis.Redis | None = None


async def get_redis_pool() -> aioredis.Redis | None:
    """Get the Redis client used for rate limiting."""
    global _redis_pool
    if _redis_pool is None and settings.enable_rate_limiting:
        try:
            _redis_pool = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        except Exception as e:
            logger.warning(f"Failed to connect to Redis for rate limiting: {e}")
            return None
    return _redis_pool


def _excluded(path: str, exclude_paths: list[str]) -> bool:
    return any(path.startswith(p) for p in exclude_paths)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to all requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.user_id = request.headers.get(USER_HEADER) or None

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"

        # Only add HSTS in production (HTTPS)
        if settings.app_env == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request and response as JSON and emit HTTP metrics."""

    def __init__(self, app, exclude_paths: list[str] | None = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if _excluded(request.url.path, self.exclude_paths):
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        user_id = getattr(request.state, "user_id", None)
        start_time = time.time()
        increment_active_requests()

        request_log = {
            "type": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "client_host": request.client.host if request.client else None,
            "user_id": user_id,
        }
        if request.method in ("POST", "PUT", "PATCH"):
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit():
                request_log["request_body_size"] = int(content_length)

        logger.info(json.dumps(request_log, default=str), extra={"request_id": request_id})

        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        error = None
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            error = str(e)
            logger.error(
                f"Request processing error: {type(e).__name__}: {str(e)}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            raise
        finally:
            decrement_active_requests()
            duration_ms = (time.time() - start_time) * 1000

            emit_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
            )

            response_log = {
                "type": "http_response",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                "user_id": user_id,
            }
            if error:
                response_log["error"] = error

            log_level = logging.ERROR if status_code >= 500 else (
                logging.WARNING if status_code >= 400 else logging.INFO
            )
            logger.log(
                log_level,
                json.dumps(response_log, default=str),
                extra={"request_id": request_id},
            )

        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        return response


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per user (or IP) with a Redis sliding window."""

    def __init__(self, app, exclude_paths: list[str] | None = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if _excluded(request.url.path, self.exclude_paths):
            return await call_next(request)

        user_id = request.headers.get(USER_HEADER)
        identifier = user_id or (request.client.host if request.client else "unknown")
        identifier_type = "user" if user_id else "ip"

        redis_client = await get_redis_pool()
        if redis_client is None:
            logger.warning("Rate limiting enabled but Redis unavailable, skipping check")
            return await call_next(request)

        window_seconds = settings.rate_limit_window_seconds
        max_requests = (
            settings.rate_limit_max_requests_per_user
            if user_id
            else settings.rate_limit_max_requests_per_ip
        )
        redis_key = f"ratelimit:{identifier_type}:{identifier}"
        now = time.time()

        try:
            pipe = redis_client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zcard(redis_key)
            pipe.zadd(redis_key, {str(now): now})
            pipe.expire(redis_key, window_seconds)
            results = await pipe.execute()
            # Count before this request, plus this request
            current_count = results[1] + 1
        except Exception as e:
            logger.error(f"Rate limiting error: {e}", exc_info=True)
            return await call_next(request)

        if current_count > max_requests:
            logger.warning(
                f"Rate limit exceeded for {identifier_type}:{identifier} "
                f"({current_count}/{max_requests} requests)"
            )
            return Response(
                content=json.dumps(
                    {
                        "error": {
                            "code": "rate_limit_exceeded",
                            "message": (
                                f"Too many requests. Try again in {window_seconds} seconds."
                            ),
                            "request_id": getattr(request.state, "request_id", None),
                        }
                    }
                ),
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers={
                    "Content-Type": "application/json",
                    "X-RateLimit-Limit": str(max_requests),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(window_seconds),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, max_requests - current_count))
        response.headers["X-RateLimit-Reset"] = str(int(now + window_seconds))
        return response


def setup_cors(app) -> None:
    """Configure CORS middleware."""
    if settings.cors_origins:
        cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    elif settings.app_env == "production":
        cors_origins = []
    else:
        cors_origins = [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )


def setup_gzip(app) -> None:
    """Configure GZip compression middleware."""
    app.add_middleware(GZipMiddleware, minimum_size=500, compresslevel=6)


def setup_rate_limiting(app) -> None:
    """Configure rate limiting middleware."""
    if settings.enable_rate_limiting:
        app.add_middleware(RateLimitingMiddleware)
        logger.info("Rate limiting middleware enabled")
