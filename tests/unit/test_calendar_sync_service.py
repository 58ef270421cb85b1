"""Unit tests for booking/services/calendar_sync_service.py."""

from datetime import UTC, date, datetime, time, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httplib2
import httpx
import pytest
from google.auth.exceptions import RefreshError

from booking.errors import ExternalServiceError
from booking.services.calendar_sync_service import (
    build_event_body,
    get_valid_access_token,
    sync_appointment,
)
from database.models import OutboxKind
from shared.google_calendar_client import TokenSet, event_id_for

MODULE = "booking.services.calendar_sync_service"


def _token(expires_in: timedelta, refresh_token="refresh-1"):
    return SimpleNamespace(
        access_token="access-old",
        refresh_token=refresh_token,
        expires_at=datetime.now(UTC) + expires_in,
    )


class TestBuildEventBody:
    def test_local_wall_clock_with_timezone(self):
        appointment = SimpleNamespace(date=date(2024, 1, 10), time=time(10, 0), duration_minutes=45)

        body = build_event_body(appointment, "Maria", "Corte")

        assert body["summary"] == "Maria - Corte"
        assert body["start"] == {"dateTime": "2024-01-10T10:00:00", "timeZone": "America/Sao_Paulo"}
        assert body["end"] == {"dateTime": "2024-01-10T10:45:00", "timeZone": "America/Sao_Paulo"}
        assert "Duração: 45 minutos" in body["description"]


class TestGetValidAccessToken:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_as_is(self, mock_session):
        token = _token(timedelta(hours=1))

        with patch(f"{MODULE}._get_token_row", AsyncMock(return_value=token)), \
             patch(f"{MODULE}.refresh_access_token", AsyncMock()) as mock_refresh:
            assert await get_valid_access_token(mock_session, uuid4()) == "access-old"

        mock_refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_stored(self, mock_session):
        token = _token(timedelta(seconds=-10))
        new_expiry = datetime.now(UTC) + timedelta(hours=1)
        refreshed = TokenSet(access_token="access-new", expires_at=new_expiry)

        with patch(f"{MODULE}._get_token_row", AsyncMock(return_value=token)), \
             patch(f"{MODULE}.refresh_access_token", AsyncMock(return_value=refreshed)) as mock_refresh:
            result = await get_valid_access_token(mock_session, uuid4())

        mock_refresh.assert_awaited_once_with("refresh-1")
        assert result == "access-new"
        assert token.expires_at == new_expiry
        # Google omitted a new refresh token; the stored one is kept
        assert token.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_raises(self, mock_session):
        token = _token(timedelta(seconds=-10), refresh_token=None)

        with patch(f"{MODULE}._get_token_row", AsyncMock(return_value=token)):
            with pytest.raises(ExternalServiceError):
                await get_valid_access_token(mock_session, uuid4())

    @pytest.mark.asyncio
    async def test_refresh_http_error_raises(self, mock_session):
        token = _token(timedelta(seconds=-10))
        request = httpx.Request("POST", "https://oauth2.googleapis.com/token")
        error = httpx.HTTPStatusError(
            "invalid_grant", request=request, response=httpx.Response(400, request=request)
        )

        with patch(f"{MODULE}._get_token_row", AsyncMock(return_value=token)), \
             patch(f"{MODULE}.refresh_access_token", AsyncMock(side_effect=error)):
            with pytest.raises(ExternalServiceError):
                await get_valid_access_token(mock_session, uuid4())

    @pytest.mark.asyncio
    async def test_not_connected_returns_none(self, mock_session):
        with patch(f"{MODULE}._get_token_row", AsyncMock(return_value=None)):
            assert await get_valid_access_token(mock_session, uuid4()) is None


class TestSyncAppointment:
    @pytest.mark.asyncio
    async def test_delete_uses_payload_event_id(self, mock_session, session_factory):
        calendar = MagicMock()
        calendar.delete_event = AsyncMock(return_value=True)

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.get_valid_access_token", AsyncMock(return_value="access")), \
             patch(f"{MODULE}.GoogleCalendarClient", MagicMock(return_value=calendar)):
            await sync_appointment(OutboxKind.CALENDAR_DELETE, uuid4(), uuid4(), {"event_id": "evt-9"})

        calendar.delete_event.assert_awaited_once_with("evt-9")
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_stores_event_id(self, mock_session, session_factory):
        appointment = SimpleNamespace(
            id=uuid4(),
            date=date(2024, 1, 10),
            time=time(10, 0),
            duration_minutes=30,
            google_event_id=None,
            is_synced_to_google=False,
            client=SimpleNamespace(name="Maria"),
            service=SimpleNamespace(name="Corte"),
        )
        calendar = MagicMock()
        calendar.create_event = AsyncMock(return_value="evt-new")

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.get_valid_access_token", AsyncMock(return_value="access")), \
             patch(f"{MODULE}._load_appointment", AsyncMock(return_value=appointment)), \
             patch(f"{MODULE}.GoogleCalendarClient", MagicMock(return_value=calendar)):
            await sync_appointment(OutboxKind.CALENDAR_CREATE, uuid4(), appointment.id, {})

        assert appointment.google_event_id == "evt-new"
        assert appointment.is_synced_to_google is True
        assert calendar.create_event.await_args.args[1] == event_id_for(appointment.id)

    @pytest.mark.asyncio
    async def test_not_connected_is_skipped(self, mock_session, session_factory):
        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.get_valid_access_token", AsyncMock(return_value=None)), \
             patch(f"{MODULE}.GoogleCalendarClient") as mock_client_cls:
            await sync_appointment(OutboxKind.CALENDAR_CREATE, uuid4(), uuid4(), {})

        mock_client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self, mock_session, session_factory):
        calendar = MagicMock()
        calendar.delete_event = AsyncMock(side_effect=OSError("connection reset"))

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.get_valid_access_token", AsyncMock(return_value="access")), \
             patch(f"{MODULE}.GoogleCalendarClient", MagicMock(return_value=calendar)):
            with pytest.raises(ExternalServiceError):
                await sync_appointment(OutboxKind.CALENDAR_DELETE, uuid4(), uuid4(), {"event_id": "e"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httplib2.ServerNotFoundError("dns"), RefreshError("invalid_grant")],
        ids=["transport", "auth"],
    )
    async def test_google_client_errors_wrapped(self, mock_session, session_factory, error):
        calendar = MagicMock()
        calendar.delete_event = AsyncMock(side_effect=error)

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.get_valid_access_token", AsyncMock(return_value="access")), \
             patch(f"{MODULE}.GoogleCalendarClient", MagicMock(return_value=calendar)):
            with pytest.raises(ExternalServiceError) as exc_info:
                await sync_appointment(OutboxKind.CALENDAR_DELETE, uuid4(), uuid4(), {"event_id": "e"})

        assert exc_info.value.__cause__ is error
