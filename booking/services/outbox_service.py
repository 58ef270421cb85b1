"""
Outbox Service - reliable delivery of booking side effects.

Booking writes add OutboxEvent rows in the same transaction as the
appointment change (enqueue). After commit the API dispatches them right
away with a bounded timeout and a single retry (dispatch_now); whatever
still fails stays pending and is retried by the outbox worker with
exponential backoff (process_due) until OUTBOX_MAX_ATTEMPTS is reached.

A dispatch failure never undoes the booking; callers receive a warning.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booking.errors import ExternalServiceError
from booking.services.calendar_sync_service import sync_appointment
from database.connection import get_async_session
from database.models import OutboxEvent, OutboxKind, OutboxStatus
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Attempts made inline right after the booking commit (one try + one retry)
INLINE_ATTEMPTS = 2

DISPATCH_ERRORS = (ExternalServiceError, asyncio.TimeoutError, SQLAlchemyError)


def _lease() -> timedelta:
    """How long a claimed event is hidden from other dispatchers."""
    settings = get_settings()
    return timedelta(seconds=settings.SECONDARY_CALL_TIMEOUT_SECONDS * (INLINE_ATTEMPTS + 1))


def compute_backoff(attempts: int) -> timedelta:
    """
    Delay before the next attempt after `attempts` failed tries.

    base * 2^(attempts-1), capped at OUTBOX_BACKOFF_MAX_SECONDS.
    """
    settings = get_settings()
    exponent = max(attempts - 1, 0)
    seconds = settings.OUTBOX_BACKOFF_BASE_SECONDS * (2 ** exponent)
    return timedelta(seconds=min(seconds, settings.OUTBOX_BACKOFF_MAX_SECONDS))


def enqueue(
    session: AsyncSession,
    *,
    user_id: UUID,
    appointment_id: UUID,
    kind: OutboxKind,
    payload: dict[str, Any] | None = None,
) -> OutboxEvent:
    """
    Add an outbox row to the caller's transaction (not committed here).

    next_attempt_at is pushed one lease ahead so the worker does not race the
    inline dispatch that follows the commit.
    """
    event = OutboxEvent(
        id=uuid4(),
        user_id=user_id,
        appointment_id=appointment_id,
        kind=kind,
        payload=payload or {},
        status=OutboxStatus.PENDING,
        attempts=0,
        next_attempt_at=datetime.now(UTC) + _lease(),
    )
    session.add(event)
    return event


async def _run_effect(kind: OutboxKind, user_id: UUID, appointment_id: UUID, payload: dict) -> None:
    settings = get_settings()
    await asyncio.wait_for(
        sync_appointment(kind, user_id, appointment_id, payload),
        timeout=settings.SECONDARY_CALL_TIMEOUT_SECONDS,
    )


async def _record_result(event_id: UUID, tries: int, error: Optional[str]) -> Optional[OutboxEvent]:
    """Persist the outcome of a dispatch: done, rescheduled or failed."""
    settings = get_settings()
    async with get_async_session() as session:
        event = await session.get(OutboxEvent, event_id)
        if event is None:
            return None

        event.attempts += tries
        if error is None:
            event.status = OutboxStatus.DONE
            event.last_error = None
        else:
            event.last_error = error[:1000]
            if event.attempts >= settings.OUTBOX_MAX_ATTEMPTS:
                event.status = OutboxStatus.FAILED
                logger.error(
                    f"Outbox event {event.id} ({event.kind.value}) failed permanently "
                    f"after {event.attempts} attempts: {error}",
                    extra={"outbox_event_id": event.id, "appointment_id": event.appointment_id},
                )
            else:
                event.next_attempt_at = datetime.now(UTC) + compute_backoff(event.attempts)

        await session.commit()
        return event


async def dispatch_event(event_id: UUID, max_tries: int = 1) -> Optional[str]:
    """
    Run one pending outbox event.

    Returns:
        None on success (or if the event is no longer pending), otherwise a
        human-readable warning
    """
    async with get_async_session() as session:
        event = await session.get(OutboxEvent, event_id)
        if event is None or event.status != OutboxStatus.PENDING:
            return None
        kind, user_id, appointment_id = event.kind, event.user_id, event.appointment_id
        payload = dict(event.payload or {})

    error: Optional[str] = None
    tries = 0
    for attempt in range(1, max_tries + 1):
        tries = attempt
        try:
            await _run_effect(kind, user_id, appointment_id, payload)
            error = None
            break
        except DISPATCH_ERRORS as e:
            error = str(e) or type(e).__name__
            logger.warning(
                f"Outbox event {event_id} ({kind.value}) attempt {attempt}/{max_tries} failed: {error}",
                extra={"outbox_event_id": event_id, "appointment_id": appointment_id},
            )
        except Exception as e:
            # Best-effort path: an unexpected failure still counts as an attempt
            error = f"{type(e).__name__}: {e}"
            logger.error(
                f"Outbox event {event_id} ({kind.value}) attempt {attempt}/{max_tries} "
                f"raised unexpectedly: {error}",
                exc_info=True,
                extra={"outbox_event_id": event_id, "appointment_id": appointment_id},
            )

    await _record_result(event_id, tries, error)

    if error is None:
        return None
    return f"Google Calendar sync failed ({error}); it will be retried automatically"


async def dispatch_now(event_ids: list[UUID]) -> list[str]:
    """Dispatch freshly committed events inline; returns warnings for failures."""
    warnings: list[str] = []
    for event_id in event_ids:
        try:
            warning = await dispatch_event(event_id, max_tries=INLINE_ATTEMPTS)
        except SQLAlchemyError as e:
            logger.error(f"Could not record outbox event {event_id}: {e}", exc_info=True)
            warning = "Google Calendar sync is delayed; it will be retried automatically"
        if warning:
            warnings.append(warning)
    return warnings


async def claim_due_events(limit: int = 50) -> list[UUID]:
    """
    Claim pending events whose next attempt is due.

    Claimed rows get next_attempt_at moved one lease ahead so concurrent
    workers (SKIP LOCKED) and inline dispatches leave them alone.
    """
    now = datetime.now(UTC)
    async with get_async_session() as session:
        result = await session.execute(
            select(OutboxEvent)
            .where(
                OutboxEvent.status == OutboxStatus.PENDING,
                OutboxEvent.next_attempt_at <= now,
            )
            .order_by(OutboxEvent.next_attempt_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        events = list(result.scalars().all())
        for event in events:
            event.next_attempt_at = now + _lease()
        await session.commit()
        return [event.id for event in events]


async def process_due(limit: int = 50) -> dict[str, int]:
    """Dispatch every due event once. Returns counters for the worker."""
    stats = {"claimed": 0, "succeeded": 0, "failed": 0}
    event_ids = await claim_due_events(limit)
    stats["claimed"] = len(event_ids)

    for event_id in event_ids:
        warning = await dispatch_event(event_id, max_tries=1)
        if warning is None:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1

    return stats
