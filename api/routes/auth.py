"""
Account endpoints: signup, login, logout and the current user.
"""

import logging

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field

from api.security import (
    JWT_COOKIE_NAME,
    JWT_COOKIE_SAMESITE,
    CurrentSession,
    create_access_token,
    revoke_token,
)
from booking.services.auth_service import authenticate, get_user, signup
from database.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

COOKIE_PATH = "/api"


class SignupRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)
    full_name: str | None = Field(None, max_length=200)


class LoginRequest(BaseModel):
    email: str
    password: str


def _user_to_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "last_sign_in_at": user.last_sign_in_at.isoformat() if user.last_sign_in_at else None,
        "created_at": user.created_at.isoformat(),
    }


def _set_session_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=JWT_COOKIE_NAME,
        value=token,
        httponly=True,  # Not accessible via JavaScript
        samesite=JWT_COOKIE_SAMESITE,
        max_age=max_age,
        path=COOKIE_PATH,
    )


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup_user(request: SignupRequest, response: Response):
    """Create an account and sign it in."""
    result = await signup(request.email, request.password, request.full_name)
    token, expires_in = create_access_token(result.user)
    _set_session_cookie(response, token, expires_in)
    return {
        "user": _user_to_dict(result.user),
        "access_token": token,
        "token_type": "bearer",
        "expires_in": expires_in,
        "warnings": result.warnings,
    }


@router.post("/login")
async def login(request: LoginRequest, response: Response):
    """
    Authenticate and return a JWT.

    Sets an HttpOnly cookie for browser clients and also returns the token
    in the body for API clients.
    """
    user = await authenticate(request.email, request.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    token, expires_in = create_access_token(user)
    _set_session_cookie(response, token, expires_in)
    return {
        "user": _user_to_dict(user),
        "access_token": token,
        "token_type": "bearer",
        "expires_in": expires_in,
    }


@router.post("/logout")
async def logout(response: Response, ctx: CurrentSession):
    """Revoke the current token and clear the cookie."""
    response.delete_cookie(
        key=JWT_COOKIE_NAME,
        path=COOKIE_PATH,
        httponly=True,
        samesite=JWT_COOKIE_SAMESITE,
    )

    if await revoke_token(ctx):
        return {"message": "Successfully logged out"}
    # Don't expose internal errors
    return {"message": "Logged out"}


@router.get("/me")
async def me(ctx: CurrentSession):
    user = await get_user(ctx.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_to_dict(user)
