"""Login rate limiting middleware using Redis."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from api.security import client_ip
from shared.redis_client import get_redis_client

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/auth/login"

# Brute force protection: 5 attempts per 5 minutes per IP
LOGIN_RATE_LIMIT_MAX_ATTEMPTS = 5
LOGIN_RATE_LIMIT_WINDOW_SECONDS = 300


def login_window_key(ip: str, now: datetime) -> str:
    """Redis key for the 5-minute window `now` falls in."""
    window = now.strftime("%Y-%m-%d:%H:") + str(now.minute // 5)
    return f"login_attempts:{ip}:{window}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limits login attempts per source IP address.

    Returns 429 Too Many Requests once the limit is exceeded. Other paths
    pass through untouched.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path != LOGIN_PATH or request.method != "POST":
            return await call_next(request)

        ip = client_ip(request) or "unknown"
        redis_key = login_window_key(ip, datetime.now(UTC))

        try:
            redis_client = get_redis_client()
            attempts = await redis_client.incr(redis_key)
            # Set TTL on first attempt
            if attempts == 1:
                await redis_client.expire(redis_key, LOGIN_RATE_LIMIT_WINDOW_SECONDS)
        except RedisError as e:
            # Don't block logins if Redis is unavailable
            logger.error(f"Rate limit check failed for IP {ip}: {e}")
            return await call_next(request)

        if attempts > LOGIN_RATE_LIMIT_MAX_ATTEMPTS:
            logger.warning(
                f"Login rate limit exceeded for IP {ip}: "
                f"{attempts} attempts in {LOGIN_RATE_LIMIT_WINDOW_SECONDS}s window"
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many login attempts",
                    "detail": f"Please try again in {LOGIN_RATE_LIMIT_WINDOW_SECONDS // 60} minutes",
                },
                headers={
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(LOGIN_RATE_LIMIT_WINDOW_SECONDS),
                },
            )

        remaining = max(0, LOGIN_RATE_LIMIT_MAX_ATTEMPTS - attempts)
        response: Response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
