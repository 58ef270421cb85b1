"""Tests for the login rate limiting middleware."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.middleware.rate_limiting import (
    LOGIN_RATE_LIMIT_MAX_ATTEMPTS,
    RateLimitMiddleware,
    login_window_key,
)

MODULE = "api.middleware.rate_limiting"


def test_window_key_groups_five_minutes():
    assert login_window_key("203.0.113.7", datetime(2024, 1, 10, 14, 7)) == (
        "login_attempts:203.0.113.7:2024-01-10:14:1"
    )
    assert login_window_key("203.0.113.7", datetime(2024, 1, 10, 14, 9)) == login_window_key(
        "203.0.113.7", datetime(2024, 1, 10, 14, 5)
    )
    assert login_window_key("203.0.113.7", datetime(2024, 1, 10, 14, 10)) != login_window_key(
        "203.0.113.7", datetime(2024, 1, 10, 14, 9)
    )


@pytest.fixture
def app():
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware)

    @app.post("/api/auth/login")
    async def login():
        return {"ok": True}

    @app.get("/api/clients")
    async def clients():
        return {"ok": True}

    return app


def _redis(attempts: int):
    redis_client = MagicMock()
    redis_client.incr = AsyncMock(return_value=attempts)
    redis_client.expire = AsyncMock()
    return redis_client


def test_login_under_limit_passes(app):
    redis_client = _redis(1)

    with patch(f"{MODULE}.get_redis_client", return_value=redis_client):
        response = TestClient(app).post("/api/auth/login")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == str(LOGIN_RATE_LIMIT_MAX_ATTEMPTS - 1)
    redis_client.expire.assert_awaited_once()


def test_login_over_limit_blocked(app):
    with patch(f"{MODULE}.get_redis_client", return_value=_redis(LOGIN_RATE_LIMIT_MAX_ATTEMPTS + 1)):
        response = TestClient(app).post("/api/auth/login")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "300"


def test_other_paths_not_limited(app):
    with patch(f"{MODULE}.get_redis_client") as mock_get:
        response = TestClient(app).get("/api/clients")

    assert response.status_code == 200
    mock_get.assert_not_called()


def test_redis_failure_fails_open(app):
    redis_client = MagicMock()
    redis_client.incr = AsyncMock(side_effect=RedisConnectionError("down"))

    with patch(f"{MODULE}.get_redis_client", return_value=redis_client):
        response = TestClient(app).post("/api/auth/login")

    assert response.status_code == 200
