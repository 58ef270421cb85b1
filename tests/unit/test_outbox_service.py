"""
Unit tests for booking/services/outbox_service.py.

Covers backoff growth and cap, outcome recording (done / rescheduled /
failed at the attempt limit) and the warning returned to API callers.
"""

from datetime import UTC, date, datetime, time, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httplib2
import pytest

from booking.errors import ExternalServiceError
from booking.services.outbox_service import (
    INLINE_ATTEMPTS,
    _record_result,
    compute_backoff,
    dispatch_event,
    dispatch_now,
    enqueue,
)
from database.models import OutboxKind, OutboxStatus

MODULE = "booking.services.outbox_service"
SYNC_MODULE = "booking.services.calendar_sync_service"


def _event(attempts=0, status=OutboxStatus.PENDING):
    return SimpleNamespace(
        id=uuid4(),
        user_id=uuid4(),
        appointment_id=uuid4(),
        kind=OutboxKind.CALENDAR_CREATE,
        payload={},
        status=status,
        attempts=attempts,
        last_error=None,
        next_attempt_at=datetime.now(UTC),
    )


class TestComputeBackoff:
    def test_doubles_from_base(self):
        assert compute_backoff(1) == timedelta(seconds=30)
        assert compute_backoff(2) == timedelta(seconds=60)
        assert compute_backoff(3) == timedelta(seconds=120)

    def test_capped_at_max(self):
        assert compute_backoff(20) == timedelta(seconds=3600)

    def test_zero_attempts_uses_base(self):
        assert compute_backoff(0) == timedelta(seconds=30)


class TestEnqueue:
    def test_adds_pending_row_leased_ahead(self, mock_session):
        before = datetime.now(UTC)

        event = enqueue(
            mock_session,
            user_id=uuid4(),
            appointment_id=uuid4(),
            kind=OutboxKind.CALENDAR_DELETE,
            payload={"event_id": "evt-1"},
        )

        mock_session.add.assert_called_once_with(event)
        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 0
        assert event.payload == {"event_id": "evt-1"}
        assert event.next_attempt_at > before
        mock_session.commit.assert_not_called()


class TestRecordResult:
    @pytest.mark.asyncio
    async def test_success_marks_done(self, mock_session, session_factory):
        event = _event(attempts=1)
        event.last_error = "boom"
        mock_session.get.return_value = event

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)):
            await _record_result(event.id, 1, None)

        assert event.status == OutboxStatus.DONE
        assert event.attempts == 2
        assert event.last_error is None
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_reschedules_with_backoff(self, mock_session, session_factory):
        event = _event(attempts=0)
        mock_session.get.return_value = event
        before = datetime.now(UTC)

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)):
            await _record_result(event.id, 2, "timeout")

        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 2
        assert event.last_error == "timeout"
        assert event.next_attempt_at >= before + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_failure_at_max_attempts_marks_failed(self, mock_session, session_factory):
        event = _event(attempts=4)
        mock_session.get.return_value = event

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)):
            await _record_result(event.id, 1, "calendar down")

        assert event.status == OutboxStatus.FAILED
        assert event.attempts == 5

    @pytest.mark.asyncio
    async def test_missing_event_ignored(self, mock_session, session_factory):
        mock_session.get.return_value = None

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)):
            assert await _record_result(uuid4(), 1, None) is None

        mock_session.commit.assert_not_awaited()


class TestDispatchEvent:
    @pytest.mark.asyncio
    async def test_success_returns_no_warning(self, mock_session, session_factory):
        event = _event()
        mock_session.get.return_value = event

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}._run_effect", AsyncMock()) as mock_effect, \
             patch(f"{MODULE}._record_result", AsyncMock()) as mock_record:
            warning = await dispatch_event(event.id, max_tries=INLINE_ATTEMPTS)

        assert warning is None
        mock_effect.assert_awaited_once()
        mock_record.assert_awaited_once_with(event.id, 1, None)

    @pytest.mark.asyncio
    async def test_retries_then_returns_warning(self, mock_session, session_factory):
        event = _event()
        mock_session.get.return_value = event
        effect = AsyncMock(side_effect=ExternalServiceError("Google Calendar calendar.create failed"))

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}._run_effect", effect), \
             patch(f"{MODULE}._record_result", AsyncMock()) as mock_record:
            warning = await dispatch_event(event.id, max_tries=2)

        assert effect.await_count == 2
        mock_record.assert_awaited_once_with(event.id, 2, "Google Calendar calendar.create failed")
        assert warning == (
            "Google Calendar sync failed (Google Calendar calendar.create failed); "
            "it will be retried automatically"
        )

    @pytest.mark.asyncio
    async def test_non_pending_event_skipped(self, mock_session, session_factory):
        event = _event(status=OutboxStatus.DONE)
        mock_session.get.return_value = event

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}._run_effect", AsyncMock()) as mock_effect:
            assert await dispatch_event(event.id) is None

        mock_effect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_failed_attempt(self, mock_session, session_factory):
        event = _event()
        mock_session.get.return_value = event
        effect = AsyncMock(side_effect=RuntimeError("unexpected"))

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}._run_effect", effect), \
             patch(f"{MODULE}._record_result", AsyncMock()) as mock_record:
            warning = await dispatch_event(event.id, max_tries=2)

        assert effect.await_count == 2
        mock_record.assert_awaited_once_with(event.id, 2, "RuntimeError: unexpected")
        assert warning is not None


class TestDispatchNow:
    @pytest.mark.asyncio
    async def test_collects_warnings_only_for_failures(self):
        ok, failing = uuid4(), uuid4()
        outcomes = {ok: None, failing: "Google Calendar sync failed (x); it will be retried automatically"}

        async def fake_dispatch(event_id, max_tries):
            return outcomes[event_id]

        with patch(f"{MODULE}.dispatch_event", MagicMock(side_effect=fake_dispatch)):
            warnings = await dispatch_now([ok, failing])

        assert warnings == [outcomes[failing]]

    @pytest.mark.asyncio
    async def test_calendar_transport_error_becomes_warning(self, mock_session, session_factory):
        """A DNS failure inside the Google client is a warning, and both tries are counted."""
        event = _event()
        mock_session.get.return_value = event
        appointment = SimpleNamespace(
            id=event.appointment_id,
            date=date(2024, 1, 10),
            time=time(10, 0),
            duration_minutes=30,
            google_event_id=None,
            is_synced_to_google=False,
            client=SimpleNamespace(name="Maria"),
            service=SimpleNamespace(name="Corte"),
        )
        calendar = MagicMock()
        calendar.create_event = AsyncMock(side_effect=httplib2.ServerNotFoundError("dns"))

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{SYNC_MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{SYNC_MODULE}.get_valid_access_token", AsyncMock(return_value="access")), \
             patch(f"{SYNC_MODULE}._load_appointment", AsyncMock(return_value=appointment)), \
             patch(f"{SYNC_MODULE}.GoogleCalendarClient", MagicMock(return_value=calendar)):
            warnings = await dispatch_now([event.id])

        assert warnings == [
            "Google Calendar sync failed (Google Calendar calendar.create failed); "
            "it will be retried automatically"
        ]
        assert calendar.create_event.await_count == INLINE_ATTEMPTS
        assert event.attempts == 2
        assert event.status == OutboxStatus.PENDING
        assert event.last_error == "Google Calendar calendar.create failed"
