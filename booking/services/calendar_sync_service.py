"""
Google Calendar Sync Service - mirrors appointments to the user's calendar.

The database is the source of truth. Sync runs AFTER the booking commit,
driven by outbox rows (see outbox_service), and never rolls a booking back.

Each user connects their own Google account (OAuth2 web flow). Access tokens
are refreshed on demand from the stored refresh token and saved back.

Usage:
    from booking.services.calendar_sync_service import sync_appointment

    await sync_appointment(OutboxKind.CALENDAR_CREATE, user_id, appointment_id, {})
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import httplib2
import httpx
import pybreaker
from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.errors import ExternalServiceError
from database.connection import get_async_session
from database.models import Appointment, GoogleToken, OutboxKind
from shared.circuit_breaker import calendar_breaker, call_with_breaker
from shared.config import get_settings
from shared.google_calendar_client import (
    GoogleCalendarClient,
    TokenSet,
    event_id_for,
    exchange_code,
    refresh_access_token,
)

logger = logging.getLogger(__name__)

# Refresh a little before Google's expiry to avoid racing it mid-request
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)

# Failures that mean "calendar provider unavailable" rather than a bug
PROVIDER_ERRORS = (
    HttpError,
    httplib2.HttpLib2Error,
    GoogleAuthError,
    httpx.HTTPError,
    pybreaker.CircuitBreakerError,
    OSError,
)


# =============================================================================
# Token Management
# =============================================================================


async def _get_token_row(session: AsyncSession, user_id: UUID) -> Optional[GoogleToken]:
    result = await session.execute(
        select(GoogleToken).where(GoogleToken.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def is_calendar_connected(session: AsyncSession, user_id: UUID) -> bool:
    return await _get_token_row(session, user_id) is not None


async def get_valid_access_token(session: AsyncSession, user_id: UUID) -> Optional[str]:
    """
    Return a usable access token for the user, refreshing it if needed.

    The refreshed token is written to the session; the caller commits.

    Returns:
        Access token, or None if the user never connected Google Calendar

    Raises:
        ExternalServiceError: Token expired and could not be refreshed
    """
    token = await _get_token_row(session, user_id)
    if token is None:
        return None

    now = datetime.now(UTC)
    if token.expires_at > now + TOKEN_REFRESH_MARGIN:
        return token.access_token

    if not token.refresh_token:
        raise ExternalServiceError(
            "Google Calendar session expired; reconnect your Google account",
            {"user_id": str(user_id)},
        )

    try:
        refreshed = await refresh_access_token(token.refresh_token)
    except httpx.HTTPError as e:
        raise ExternalServiceError(
            "Could not refresh Google Calendar access token",
            {"user_id": str(user_id), "reason": str(e)},
        ) from e

    token.access_token = refreshed.access_token
    token.expires_at = refreshed.expires_at
    if refreshed.refresh_token:
        token.refresh_token = refreshed.refresh_token

    logger.info(
        f"Refreshed Google access token for user {user_id}",
        extra={"user_id": user_id},
    )
    return token.access_token


async def connect_google_account(user_id: UUID, code: str) -> TokenSet:
    """
    Finish the OAuth2 web flow: exchange the code and store the tokens.

    A reconnect without a new refresh token keeps the previous one.
    """
    try:
        tokens = await exchange_code(code)
    except httpx.HTTPError as e:
        raise ExternalServiceError(
            "Google rejected the authorization code", {"reason": str(e)}
        ) from e

    async with get_async_session() as session:
        row = await _get_token_row(session, user_id)
        if row is None:
            row = GoogleToken(
                user_id=user_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
            )
            session.add(row)
        else:
            row.access_token = tokens.access_token
            row.expires_at = tokens.expires_at
            if tokens.refresh_token:
                row.refresh_token = tokens.refresh_token
        await session.commit()

    logger.info(f"Google Calendar connected for user {user_id}", extra={"user_id": user_id})
    return tokens


async def disconnect_google_account(user_id: UUID) -> bool:
    """Forget the user's Google tokens. Returns False if none were stored."""
    async with get_async_session() as session:
        result = await session.execute(
            delete(GoogleToken).where(GoogleToken.user_id == user_id)
        )
        await session.commit()
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.info(f"Google Calendar disconnected for user {user_id}", extra={"user_id": user_id})
    return removed


# =============================================================================
# Event Sync
# =============================================================================


def build_event_body(
    appointment: Appointment, client_name: str, service_name: str
) -> dict[str, Any]:
    """Google Calendar event for an appointment, in local wall-clock time."""
    settings = get_settings()
    start = datetime.combine(appointment.date, appointment.time)
    end = start + timedelta(minutes=appointment.duration_minutes)

    return {
        "summary": f"{client_name} - {service_name}",
        "description": (
            "Agendamento via Agenda Pro\n\n"
            f"Cliente: {client_name}\n"
            f"Serviço: {service_name}\n"
            f"Duração: {appointment.duration_minutes} minutos"
        ),
        "start": {
            "dateTime": start.isoformat(timespec="seconds"),
            "timeZone": settings.TIMEZONE,
        },
        "end": {
            "dateTime": end.isoformat(timespec="seconds"),
            "timeZone": settings.TIMEZONE,
        },
    }


async def _load_appointment(session: AsyncSession, appointment_id: UUID) -> Optional[Appointment]:
    result = await session.execute(
        select(Appointment)
        .options(selectinload(Appointment.client), selectinload(Appointment.service))
        .where(Appointment.id == appointment_id)
    )
    return result.scalar_one_or_none()


async def _push_event(calendar: GoogleCalendarClient, appointment: Appointment, kind: OutboxKind) -> None:
    body = build_event_body(appointment, appointment.client.name, appointment.service.name)

    if kind == OutboxKind.CALENDAR_UPDATE and appointment.google_event_id:
        try:
            await call_with_breaker(
                calendar_breaker, calendar.update_event, appointment.google_event_id, body
            )
            appointment.is_synced_to_google = True
            return
        except HttpError as e:
            if e.resp.status not in (404, 410):
                raise
            logger.warning(
                f"GCal event {appointment.google_event_id} missing, recreating",
                extra={"appointment_id": appointment.id},
            )

    event_id = await call_with_breaker(
        calendar_breaker, calendar.create_event, body, event_id_for(appointment.id)
    )
    appointment.google_event_id = event_id
    appointment.is_synced_to_google = True


async def sync_appointment(
    kind: OutboxKind,
    user_id: UUID,
    appointment_id: UUID,
    payload: dict[str, Any],
) -> None:
    """
    Apply one calendar sync operation.

    - calendar.create / calendar.update: push the appointment, storing the
      event id. Appointments deleted meanwhile are skipped.
    - calendar.delete: delete payload["event_id"]; an already-gone event counts
      as deleted.
    Users without a connected calendar are skipped.

    Raises:
        ExternalServiceError: Calendar provider or token failure
    """
    async with get_async_session() as session:
        try:
            access_token = await get_valid_access_token(session, user_id)
            if access_token is None:
                logger.info(
                    f"Skipping {kind.value} for appointment {appointment_id}: "
                    f"Google Calendar not connected",
                    extra={"appointment_id": appointment_id, "user_id": user_id},
                )
                return

            calendar = GoogleCalendarClient(access_token)

            if kind == OutboxKind.CALENDAR_DELETE:
                event_id = payload.get("event_id")
                if event_id:
                    await call_with_breaker(calendar_breaker, calendar.delete_event, event_id)
                    logger.info(
                        f"Deleted GCal event {event_id} for appointment {appointment_id}",
                        extra={"appointment_id": appointment_id},
                    )
            else:
                appointment = await _load_appointment(session, appointment_id)
                if appointment is None:
                    logger.info(
                        f"Appointment {appointment_id} no longer exists, nothing to sync",
                        extra={"appointment_id": appointment_id},
                    )
                else:
                    await _push_event(calendar, appointment, kind)
                    logger.info(
                        f"Synced appointment {appointment_id} to GCal: "
                        f"event_id={appointment.google_event_id}",
                        extra={"appointment_id": appointment_id},
                    )

            await session.commit()

        except PROVIDER_ERRORS as e:
            # Keep a refreshed token even when the event call failed
            await session.commit()
            raise ExternalServiceError(
                f"Google Calendar {kind.value} failed",
                {"appointment_id": str(appointment_id), "reason": str(e)},
            ) from e
