"""Tests for FastAPI middleware functionality."""

from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, Mock, patch

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from finjobs.core.config import settings
from finjobs.core.middleware import (
    RateLimitingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)


def _app(*middleware) -> FastAPI:
    app = FastAPI()

    @app.get("/echo")
    async def echo(request: Request):
        return {
            "request_id": getattr(request.state, "request_id", None),
            "user_id": getattr(request.state, "user_id", None),
        }

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    for cls in middleware:
        app.add_middleware(cls)
    return app


def _redis_with_count(count: int) -> AsyncMock:
    # pipeline() is synchronous and chains; execute() is awaited
    pipe = Mock()
    pipe.zremrangebyscore = lambda *args, **kwargs: pipe
    pipe.zcard = lambda *args, **kwargs: pipe
    pipe.zadd = lambda *args, **kwargs: pipe
    pipe.expire = lambda *args, **kwargs: pipe
    pipe.execute = AsyncMock(return_value=[0, count, 1, 1])

    redis_client = AsyncMock()
    redis_client.pipeline = lambda: pipe
    return redis_client


class TestRequestIDMiddleware:
    """Test RequestIDMiddleware functionality."""

    def test_adds_request_id_when_missing(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert len(response.headers["X-Request-ID"]) == 36

    def test_preserves_existing_request_id(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "req-12345"})

        assert response.headers["X-Request-ID"] == "req-12345"

    def test_request_and_user_in_state(self):
        client = TestClient(_app(RequestIDMiddleware))

        response = client.get("/echo", headers={"X-User-ID": "user-9"})

        data = response.json()
        assert data["request_id"] == response.headers["X-Request-ID"]
        assert data["user_id"] == "user-9"

    def test_error_body_carries_request_id(self, client: TestClient):
        response = client.get(
            "/api/v1/jobs/not-a-job/status", headers={"X-Request-ID": "req-404"}
        )

        assert response.status_code == 404
        assert response.json()["error"]["request_id"] == "req-404"


class TestSecurityHeadersMiddleware:
    """Test SecurityHeadersMiddleware functionality."""

    def test_security_headers_present(self, client: TestClient):
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-XSS-Protection"] == "1; mode=block"
        assert "Strict-Transport-Security" not in response.headers

    def test_hsts_only_in_production(self):
        client = TestClient(_app(SecurityHeadersMiddleware))

        with patch.object(settings, "app_env", "production"):
            response = client.get("/health")

        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]


class TestRequestLoggingMiddleware:
    """Test RequestLoggingMiddleware functionality."""

    def test_logs_request_and_response(self, caplog):
        # RequestIDMiddleware runs first, so add it last
        client = TestClient(_app(RequestLoggingMiddleware, RequestIDMiddleware))
        caplog.set_level(logging.INFO)

        response = client.get("/echo", headers={"X-User-ID": "user-1"})

        assert response.headers["X-Process-Time"].endswith("ms")
        messages = [r.message for r in caplog.records]
        request_logs = [json.loads(m) for m in messages if '"type": "http_request"' in m]
        response_logs = [json.loads(m) for m in messages if '"type": "http_response"' in m]
        assert request_logs[0]["path"] == "/echo"
        assert request_logs[0]["user_id"] == "user-1"
        assert response_logs[0]["status_code"] == 200
        assert response_logs[0]["request_id"] == response.headers["X-Request-ID"]

    def test_excludes_health_endpoint(self, caplog):
        client = TestClient(_app(RequestLoggingMiddleware, RequestIDMiddleware))
        caplog.set_level(logging.INFO)

        response = client.get("/health")

        assert "X-Process-Time" not in response.headers
        assert not [r for r in caplog.records if "http_request" in r.message]


class TestRateLimitingMiddleware:
    """Test RateLimitingMiddleware functionality."""

    def test_allows_requests_below_limit(self):
        async def get_redis():
            return _redis_with_count(5)

        with patch("finjobs.core.middleware.get_redis_pool", side_effect=get_redis), \
                patch.object(settings, "rate_limit_max_requests_per_ip", 10):
            client = TestClient(_app(RateLimitingMiddleware))
            response = client.get("/echo")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_rejects_requests_over_limit(self):
        async def get_redis():
            return _redis_with_count(100)

        with patch("finjobs.core.middleware.get_redis_pool", side_effect=get_redis), \
                patch.object(settings, "rate_limit_max_requests_per_ip", 100), \
                patch.object(settings, "rate_limit_window_seconds", 60):
            client = TestClient(_app(RateLimitingMiddleware))
            response = client.get("/echo")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limit_exceeded"
        assert response.headers["Retry-After"] == "60"

    def test_user_header_uses_user_limit(self):
        async def get_redis():
            return _redis_with_count(150)

        with patch("finjobs.core.middleware.get_redis_pool", side_effect=get_redis), \
                patch.object(settings, "rate_limit_max_requests_per_ip", 100), \
                patch.object(settings, "rate_limit_max_requests_per_user", 1000):
            client = TestClient(_app(RateLimitingMiddleware))
            response = client.get("/echo", headers={"X-User-ID": "user-1"})

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "1000"

    def test_skips_when_redis_unavailable(self):
        async def get_redis():
            return None

        with patch("finjobs.core.middleware.get_redis_pool", side_effect=get_redis):
            client = TestClient(_app(RateLimitingMiddleware))
            response = client.get("/echo")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_excluded_paths_never_touch_redis(self):
        get_redis = AsyncMock()

        with patch("finjobs.core.middleware.get_redis_pool", get_redis):
            client = TestClient(_app(RateLimitingMiddleware))
            response = client.get("/health")

        assert response.status_code == 200
        get_redis.assert_not_called()


class TestMiddlewareIntegration:
    def test_cors_preflight(self, client: TestClient):
        response = client.options(
            "/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )

        assert response.status_code in (200, 204)
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_ping(self, client: TestClient):
        response = client.get("/api/v1/ping")

        assert response.json() == {"message": "pong"}
        assert "X-Request-ID" in response.headers
