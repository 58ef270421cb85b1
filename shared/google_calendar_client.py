"""
Google Calendar client: OAuth2 web flow and event operations.

OAuth2 token exchange and refresh go straight to Google's token endpoint
with httpx. Event operations use google-api-python-client with the user's
access token; its blocking calls run in the default executor.

Usage:
    from shared.google_calendar_client import GoogleCalendarClient, refresh_access_token

    tokens = await refresh_access_token(refresh_token)
    event_id = await GoogleCalendarClient(tokens.access_token).create_event(body)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode
from uuid import UUID

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import get_settings
from shared.evolution_client import is_retryable_http_error

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
PRIMARY_CALENDAR = "primary"

# Event ids must use base32hex characters (a-v, 0-9)
EVENT_ID_PREFIX = "agendapro"


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by Google's token endpoint."""

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenSet":
        expires_in = int(data.get("expires_in", 3600))
        return cls(
            access_token=data["access_token"],
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
        )


def event_id_for(appointment_id: UUID) -> str:
    """Stable Google event id for an appointment, so a retried insert cannot duplicate it."""
    return f"{EVENT_ID_PREFIX}{appointment_id.hex}"


def build_authorization_url(state: str) -> str:
    """
    Build the consent screen URL for Google Calendar access.

    access_type=offline and prompt=consent make Google return a refresh token
    every time, so reconnecting an account always yields one.
    """
    settings = get_settings()
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": CALENDAR_SCOPE,
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(is_retryable_http_error),
    reraise=True,
)
async def _post_token_request(
    form: dict[str, str], transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, Any]:
    async with httpx.AsyncClient(transport=transport, timeout=10.0) as client:
        try:
            response = await client.post(GOOGLE_TOKEN_URL, data=form)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"Google token endpoint error ({form.get('grant_type')}): {e}")
            raise


async def exchange_code(
    code: str, transport: httpx.AsyncBaseTransport | None = None
) -> TokenSet:
    """Exchange an authorization code for access and refresh tokens."""
    settings = get_settings()
    data = await _post_token_request(
        {
            "code": code,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        },
        transport=transport,
    )
    return TokenSet.from_response(data)


async def refresh_access_token(
    refresh_token: str, transport: httpx.AsyncBaseTransport | None = None
) -> TokenSet:
    """Get a new access token. Google usually omits refresh_token here."""
    settings = get_settings()
    data = await _post_token_request(
        {
            "refresh_token": refresh_token,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "grant_type": "refresh_token",
        },
        transport=transport,
    )
    return TokenSet.from_response(data)


class GoogleCalendarClient:
    """Event operations on a user's primary Google Calendar."""

    def __init__(self, access_token: str, calendar_id: str = PRIMARY_CALENDAR):
        self.calendar_id = calendar_id
        self._service = build(
            "calendar",
            "v3",
            credentials=Credentials(token=access_token),
            cache_discovery=False,
        )

    async def _run(self, request) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, request.execute)

    async def create_event(self, body: dict[str, Any], event_id: Optional[str] = None) -> str:
        """
        Insert an event and return its id.

        With an explicit event_id the insert is idempotent: if Google already
        has that id (409, e.g. an earlier insert whose response was lost, or
        an event the user deleted) the existing event is overwritten and
        confirmed instead.
        """
        if event_id is None:
            event = await self._run(
                self._service.events().insert(calendarId=self.calendar_id, body=body)
            )
            return event["id"]

        try:
            await self._run(
                self._service.events().insert(
                    calendarId=self.calendar_id, body={**body, "id": event_id}
                )
            )
        except HttpError as e:
            if e.resp.status != 409:
                raise
            logger.info(f"GCal event {event_id} already exists, updating it")
            await self.update_event(event_id, {**body, "status": "confirmed"})
        return event_id

    async def update_event(self, event_id: str, body: dict[str, Any]) -> None:
        await self._run(
            self._service.events().update(
                calendarId=self.calendar_id, eventId=event_id, body=body
            )
        )

    async def delete_event(self, event_id: str) -> bool:
        """
        Delete an event.

        Returns:
            True if deleted, False if Google reports it gone already (404/410)
        """
        try:
            await self._run(
                self._service.events().delete(calendarId=self.calendar_id, eventId=event_id)
            )
            return True
        except HttpError as e:
            if e.resp.status in (404, 410):
                logger.warning(f"GCal event {event_id} already deleted")
                return False
            raise
