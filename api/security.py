"""
Session tokens and the request SessionContext.

Access tokens are HS256 JWTs (python-jose) carrying the user id, email,
role, a jti for revocation and auth_time (when the password was last
entered). They are accepted from the HttpOnly cookie or an Authorization
Bearer header. Logout blacklists the jti in Redis until the token expires.
"""

import logging
import time
from datetime import UTC, datetime
from typing import Annotated, Any
from uuid import UUID, uuid4

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from redis.exceptions import RedisError

from booking.context import SessionContext
from booking.errors import AuthorizationError
from booking.services.auth_service import get_user
from database.models import User
from shared.config import get_settings
from shared.redis_client import blacklist_token, is_token_blacklisted

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)  # auto_error=False allows cookie fallback

JWT_ALGORITHM = "HS256"
JWT_COOKIE_NAME = "agenda_token"
JWT_COOKIE_SAMESITE = "lax"
ACCESS_TOKEN_TYPE = "access"
OAUTH_STATE_TYPE = "google_oauth_state"
OAUTH_STATE_EXPIRE_SECONDS = 600


def create_access_token(user: User, auth_time: int | None = None) -> tuple[str, int]:
    """
    Create a signed access token for a user.

    Returns:
        Tuple of (encoded_token, expires_in_seconds)
    """
    settings = get_settings()
    now = int(time.time())
    expires_in = settings.JWT_EXPIRE_MINUTES * 60
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "jti": str(uuid4()),
        "iat": now,
        "exp": now + expires_in,
        "auth_time": auth_time or now,
        "type": ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM), expires_in


def decode_token(token: str, expected_type: str) -> dict[str, Any]:
    """
    Verify signature, expiry and token type.

    Raises:
        HTTPException 401: Invalid, expired or wrong-type token
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
        )
    if payload.get("type") != expected_type:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )
    return payload


def create_oauth_state(user_id: UUID) -> str:
    """Short-lived signed state naming the user that started the Google flow."""
    settings = get_settings()
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + OAUTH_STATE_EXPIRE_SECONDS,
        "type": OAUTH_STATE_TYPE,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM)


def read_oauth_state(state: str) -> UUID:
    payload = decode_token(state, OAUTH_STATE_TYPE)
    return UUID(payload["sub"])


def client_ip(request: Request) -> str | None:
    """First X-Forwarded-For entry, else X-Real-IP, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


async def check_token_blacklist(jti: str) -> bool:
    """Check if token JTI is blacklisted (revoked)."""
    try:
        return await is_token_blacklisted(jti)
    except RedisError as e:
        logger.error(f"Error checking token blacklist: {e}")
        # Fail open on Redis errors to avoid blocking all requests
        return False


async def revoke_token(ctx: SessionContext) -> bool:
    """Blacklist the token until it would have expired anyway."""
    ttl = int((ctx.expires_at - datetime.now(UTC)).total_seconds())
    if ttl <= 0:
        return False
    try:
        await blacklist_token(ctx.token_id, ttl)
    except RedisError as e:
        logger.error(f"Error adding token to blacklist: {e}")
        return False
    logger.info(f"Token {ctx.token_id[:8]}... added to blacklist (TTL: {ttl}s)")
    return True


async def get_session_context(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    agenda_token: Annotated[str | None, Cookie()] = None,
) -> SessionContext:
    """
    Dependency resolving the authenticated caller.

    Supports two authentication methods (in priority order):
    1. HttpOnly cookie
    2. Authorization header (for API clients)

    The role is read from the database, so a role change takes effect on
    the next request.
    """
    token = agenda_token
    if not token and credentials:
        token = credentials.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(token, ACCESS_TOKEN_TYPE)

    jti = payload.get("jti")
    if not jti or await check_token_blacklist(jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    user = await get_user(UUID(payload["sub"]))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )

    return SessionContext(
        user_id=user.id,
        email=user.email,
        role=user.role,
        token_id=jti,
        authenticated_at=datetime.fromtimestamp(payload.get("auth_time", payload["iat"]), UTC),
        expires_at=datetime.fromtimestamp(payload["exp"], UTC),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


async def require_admin(
    ctx: Annotated[SessionContext, Depends(get_session_context)],
) -> SessionContext:
    if not ctx.is_admin:
        raise AuthorizationError("Admin role required")
    return ctx


CurrentSession = Annotated[SessionContext, Depends(get_session_context)]
AdminSession = Annotated[SessionContext, Depends(require_admin)]
