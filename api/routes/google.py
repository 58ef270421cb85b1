"""
Google Calendar connection endpoints (OAuth2 web flow).

The callback is reached by the browser redirect from Google, so it carries
no session; the signed `state` names the user instead.
"""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import RedirectResponse

from api.security import CurrentSession, create_oauth_state, read_oauth_state
from booking.errors import ExternalServiceError
from booking.services.calendar_sync_service import (
    connect_google_account,
    disconnect_google_account,
    is_calendar_connected,
)
from database.connection import get_async_session
from shared.config import get_settings
from shared.google_calendar_client import build_authorization_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google", tags=["google"])


def _settings_redirect(result: str) -> RedirectResponse:
    settings = get_settings()
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/settings?google={result}")


@router.get("/auth-url")
async def get_auth_url(ctx: CurrentSession):
    return {"url": build_authorization_url(create_oauth_state(ctx.tenant_id))}


@router.get("/callback")
async def oauth_callback(
    code: str | None = None, state: str | None = None, error: str | None = None
):
    """Store the tokens and send the browser back to the settings page."""
    if error:
        logger.warning(f"Google authorization denied: {error}")
        return _settings_redirect("denied")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    user_id = read_oauth_state(state)
    try:
        await connect_google_account(user_id, code)
    except ExternalServiceError as e:
        logger.warning(f"Google connection failed for user {user_id}: {e.message}")
        return _settings_redirect("error")
    return _settings_redirect("connected")


@router.get("/status")
async def connection_status(ctx: CurrentSession):
    async with get_async_session() as session:
        connected = await is_calendar_connected(session, ctx.tenant_id)
    return {"connected": connected}


@router.delete("/connection")
async def disconnect(ctx: CurrentSession):
    removed = await disconnect_google_account(ctx.tenant_id)
    return {"disconnected": removed}
