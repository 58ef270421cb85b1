"""
Appointment Booking Service - create, update, delete and notify.

Architecture:
- Every booking write runs in a SERIALIZABLE transaction: the overlap check
  reads the tenant's appointments for the day and the insert/update happens
  in the same snapshot. Concurrent writers that would both pass the check
  get a serialization failure; the transaction is retried and then sees the
  other booking. The appointments_no_overlap exclusion constraint backs this
  up at the database level (IntegrityError -> ConflictError).
- Google Calendar sync is a secondary effect: an outbox row is written in the
  same transaction and dispatched after commit. Sync failures become
  warnings on the result and never roll the booking back.
- WhatsApp notifications are the primary effect of send_notification: the
  appointment row is locked, the message is sent, and only then is the
  messages_sent flag flipped, so each type goes out at most once.

Errors raised (booking.errors): ValidationError, MissingPhoneError,
NotFoundError, ConflictError, AlreadySentError, ExternalServiceError.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from typing import Any, Optional, TypeVar
from uuid import UUID, uuid4

import httpx
import pybreaker
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.context import SessionContext
from booking.errors import (
    AgendaError,
    AlreadySentError,
    ConflictError,
    ExternalServiceError,
    MissingPhoneError,
    NotFoundError,
    ValidationError,
)
from booking.overlap import Candidate, find_conflict
from booking.services.calendar_sync_service import is_calendar_connected
from booking.services.outbox_service import dispatch_now, enqueue
from booking.utils.date_ranges import CalendarView, view_range
from booking.utils.messaging import normalize_phone, render_template
from database.connection import get_async_session
from database.models import (
    Appointment,
    AppointmentStatus,
    Client,
    InstanceStatus,
    MessageTemplate,
    MessagingInstance,
    NotificationType,
    OutboxKind,
    Service,
    default_messages_sent,
)
from shared.circuit_breaker import call_with_breaker, messaging_breaker
from shared.evolution_client import STATE_OPEN, EvolutionClient

logger = logging.getLogger(__name__)

# Attempts for a booking transaction that keeps hitting serialization failures
MAX_TRANSACTION_ATTEMPTS = 3

# PostgreSQL SQLSTATEs
SERIALIZATION_FAILURE = "40001"
FOREIGN_KEY_VIOLATION = "23503"
EXCLUSION_VIOLATION = "23P01"

UPDATABLE_FIELDS = {"client_id", "service_id", "date", "time", "price", "notes", "status"}

T = TypeVar("T")


@dataclass
class AppointmentInput:
    """Fields accepted when booking a new appointment."""

    client_id: Optional[UUID]
    service_id: Optional[UUID]
    date: Optional[date]
    time: Optional[time]
    price: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass
class BookingResult:
    """Outcome of a booking write plus any secondary-effect warnings."""

    appointment: Appointment
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Query Helpers
# =============================================================================


async def _get_service(session: AsyncSession, user_id: UUID, service_id: UUID) -> Service:
    result = await session.execute(
        select(Service).where(Service.id == service_id, Service.user_id == user_id)
    )
    service = result.scalar_one_or_none()
    if service is None:
        raise NotFoundError("Service not found", {"service_id": str(service_id)})
    return service


async def _get_client(session: AsyncSession, user_id: UUID, client_id: UUID) -> Client:
    result = await session.execute(
        select(Client).where(Client.id == client_id, Client.user_id == user_id)
    )
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFoundError("Client not found", {"client_id": str(client_id)})
    return client


async def _get_appointment(
    session: AsyncSession,
    user_id: UUID,
    appointment_id: UUID,
    for_update: bool = False,
    with_relations: bool = False,
) -> Appointment:
    query = select(Appointment).where(
        Appointment.id == appointment_id, Appointment.user_id == user_id
    )
    if with_relations:
        query = query.options(
            selectinload(Appointment.client), selectinload(Appointment.service)
        )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found", {"appointment_id": str(appointment_id)})
    return appointment


async def _get_appointments_on(
    session: AsyncSession, user_id: UUID, day: date
) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.user_id == user_id, Appointment.date == day)
        .order_by(Appointment.time)
    )
    return list(result.scalars().all())


async def _get_template(
    session: AsyncSession, user_id: UUID, notification_type: NotificationType
) -> MessageTemplate:
    result = await session.execute(
        select(MessageTemplate).where(
            MessageTemplate.user_id == user_id,
            MessageTemplate.type == notification_type,
        )
    )
    template = result.scalar_one_or_none()
    if template is None:
        raise NotFoundError(
            f"No message template for {notification_type.value}",
            {"type": notification_type.value},
        )
    return template


async def _get_instance(session: AsyncSession, user_id: UUID) -> MessagingInstance:
    result = await session.execute(
        select(MessagingInstance).where(MessagingInstance.user_id == user_id)
    )
    instance = result.scalar_one_or_none()
    if instance is None:
        raise ExternalServiceError(
            "WhatsApp is not configured; create an instance in Settings first"
        )
    return instance


# =============================================================================
# Validation
# =============================================================================


def _ensure_no_conflict(
    candidate: Candidate, exclude_id: Optional[UUID], existing: list[Appointment]
) -> None:
    conflict = find_conflict(candidate, exclude_id, existing)
    if conflict is not None:
        raise ConflictError(
            "This time slot overlaps an existing appointment",
            {
                "conflicting_appointment_id": str(conflict.id),
                "date": conflict.date.isoformat(),
                "time": conflict.time.strftime("%H:%M"),
            },
        )


def _validate_price(price: Optional[Decimal]) -> None:
    if price is not None and price < 0:
        raise ValidationError("Price cannot be negative", {"price": str(price)})


def _validate_create(data: AppointmentInput) -> None:
    missing = [
        name
        for name in ("client_id", "service_id", "date", "time")
        if getattr(data, name) is None
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", {"missing": missing}
        )
    _validate_price(data.price)


def _validate_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown fields: {', '.join(sorted(unknown))}", {"unknown": sorted(unknown)}
        )
    for name in ("client_id", "service_id", "date", "time"):
        if name in changes and changes[name] is None:
            raise ValidationError(f"{name} cannot be empty", {"field": name})
    if "price" in changes:
        if changes["price"] is None:
            raise ValidationError("price cannot be empty", {"field": "price"})
        _validate_price(changes["price"])
    if "status" in changes:
        try:
            changes["status"] = AppointmentStatus(changes["status"])
        except ValueError as e:
            raise ValidationError(
                f"Invalid status: {changes['status']}", {"field": "status"}
            ) from e


# =============================================================================
# Transactions
# =============================================================================


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_serialization_failure(error: DBAPIError) -> bool:
    return _sqlstate(error) == SERIALIZATION_FAILURE


def _constraint_error(error: IntegrityError) -> AgendaError:
    """Domain error for a write rejected by a database constraint."""
    code = _sqlstate(error)
    if code == EXCLUSION_VIOLATION:
        return ConflictError(
            "This time slot overlaps an existing appointment",
            {"reason": "overlap"},
        )
    if code == FOREIGN_KEY_VIOLATION:
        return NotFoundError(
            "Client or service no longer exists",
            {"reason": "foreign_key_violation"},
        )
    return ConflictError(
        "The appointment was rejected by a database constraint",
        {"reason": "constraint_violation"},
    )


async def _run_booking_transaction(
    operation: str,
    work: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """
    Run `work` in a SERIALIZABLE transaction and commit it.

    Serialization failures are retried up to MAX_TRANSACTION_ATTEMPTS times,
    then reported as ConflictError. Constraint violations are mapped right
    away: an overlap (exclusion constraint) is ConflictError, a vanished
    client or service (foreign key) is NotFoundError.
    """
    for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
        async with get_async_session() as session:
            try:
                await session.execute(text("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE"))
                result = await work(session)
                await session.commit()
                return result

            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"{operation} rejected by database constraint: {e.orig}")
                raise _constraint_error(e) from e

            except DBAPIError as e:
                await session.rollback()
                if not _is_serialization_failure(e):
                    raise
                logger.warning(
                    f"{operation} hit a serialization failure "
                    f"(attempt {attempt}/{MAX_TRANSACTION_ATTEMPTS}), retrying"
                )

    raise ConflictError(
        "The schedule changed while booking; please try again",
        {"reason": "serialization_failure"},
    )


async def _reload(user_id: UUID, appointment_id: UUID) -> Optional[Appointment]:
    """Fetch the appointment again so calendar sync results are visible."""
    async with get_async_session() as session:
        result = await session.execute(
            select(Appointment).where(
                Appointment.id == appointment_id, Appointment.user_id == user_id
            )
        )
        return result.scalar_one_or_none()


async def _finish(
    ctx: SessionContext, appointment: Appointment, outbox_ids: list[UUID]
) -> BookingResult:
    if not outbox_ids:
        return BookingResult(appointment=appointment)
    warnings = await dispatch_now(outbox_ids)
    refreshed = await _reload(ctx.tenant_id, appointment.id)
    return BookingResult(appointment=refreshed or appointment, warnings=warnings)


# =============================================================================
# Booking Operations
# =============================================================================


async def create_appointment(ctx: SessionContext, data: AppointmentInput) -> BookingResult:
    """
    Book a new appointment with status=pending.

    The service's duration and (unless given) price are copied onto the
    appointment.

    Raises:
        ValidationError: Missing field or negative price
        NotFoundError: Service or client does not belong to the tenant
        ConflictError: Slot overlaps a non-cancelled appointment that day
    """
    _validate_create(data)
    user_id = ctx.tenant_id

    async def work(session: AsyncSession) -> tuple[Appointment, list[UUID]]:
        service = await _get_service(session, user_id, data.service_id)
        await _get_client(session, user_id, data.client_id)

        existing = await _get_appointments_on(session, user_id, data.date)
        candidate = Candidate(data.date, data.time, service.duration_minutes)
        _ensure_no_conflict(candidate, None, existing)

        appointment = Appointment(
            id=uuid4(),
            user_id=user_id,
            client_id=data.client_id,
            service_id=service.id,
            date=data.date,
            time=data.time,
            duration_minutes=service.duration_minutes,
            price=data.price if data.price is not None else service.price,
            notes=data.notes,
            status=AppointmentStatus.PENDING,
            messages_sent=default_messages_sent(),
            is_synced_to_google=False,
        )
        session.add(appointment)

        outbox_ids: list[UUID] = []
        if await is_calendar_connected(session, user_id):
            event = enqueue(
                session,
                user_id=user_id,
                appointment_id=appointment.id,
                kind=OutboxKind.CALENDAR_CREATE,
            )
            outbox_ids.append(event.id)
        return appointment, outbox_ids

    appointment, outbox_ids = await _run_booking_transaction("create appointment", work)

    logger.info(
        f"Appointment {appointment.id} booked for {appointment.date} {appointment.time}",
        extra={"appointment_id": appointment.id, "user_id": user_id},
    )
    return await _finish(ctx, appointment, outbox_ids)


async def update_appointment(
    ctx: SessionContext, appointment_id: UUID, changes: dict[str, Any]
) -> BookingResult:
    """
    Apply a partial update, re-validating overlap with the appointment itself
    excluded (moving onto its own former slot is allowed).

    Changing service_id re-snapshots duration and, unless a price is given,
    price. Cancelled appointments are not checked for overlap.

    Raises:
        ValidationError: Unknown/empty field, negative price, bad status
        NotFoundError: Appointment, its service or the new client missing
        ConflictError: New slot overlaps another appointment
    """
    changes = dict(changes)
    _validate_changes(changes)
    user_id = ctx.tenant_id

    async def work(session: AsyncSession) -> tuple[Appointment, list[UUID]]:
        appointment = await _get_appointment(session, user_id, appointment_id, for_update=True)

        service_changed = (
            "service_id" in changes and changes["service_id"] != appointment.service_id
        )
        service = await _get_service(
            session, user_id, changes.get("service_id", appointment.service_id)
        )
        if "client_id" in changes and changes["client_id"] != appointment.client_id:
            await _get_client(session, user_id, changes["client_id"])

        new_date = changes.get("date", appointment.date)
        new_time = changes.get("time", appointment.time)
        new_status = changes.get("status", appointment.status)
        duration = service.duration_minutes if service_changed else appointment.duration_minutes

        if new_status != AppointmentStatus.CANCELLED:
            existing = await _get_appointments_on(session, user_id, new_date)
            _ensure_no_conflict(Candidate(new_date, new_time, duration), appointment.id, existing)

        if service_changed:
            appointment.service_id = service.id
            appointment.duration_minutes = service.duration_minutes
            appointment.price = changes.get("price", service.price)
        elif "price" in changes:
            appointment.price = changes["price"]
        if "client_id" in changes:
            appointment.client_id = changes["client_id"]
        if "notes" in changes:
            appointment.notes = changes["notes"]
        appointment.date = new_date
        appointment.time = new_time
        appointment.status = new_status

        outbox_ids: list[UUID] = []
        if await is_calendar_connected(session, user_id):
            kind = (
                OutboxKind.CALENDAR_UPDATE
                if appointment.google_event_id
                else OutboxKind.CALENDAR_CREATE
            )
            event = enqueue(
                session, user_id=user_id, appointment_id=appointment.id, kind=kind
            )
            outbox_ids.append(event.id)
        return appointment, outbox_ids

    appointment, outbox_ids = await _run_booking_transaction("update appointment", work)

    logger.info(
        f"Appointment {appointment.id} updated: {sorted(changes)}",
        extra={"appointment_id": appointment.id, "user_id": user_id},
    )
    return await _finish(ctx, appointment, outbox_ids)


async def delete_appointment(ctx: SessionContext, appointment_id: UUID) -> BookingResult:
    """
    Delete an appointment (hard delete).

    The calendar event is removed only if the appointment was synced; the
    deletion itself never waits on Google.

    Raises:
        NotFoundError: Appointment does not belong to the tenant
    """
    user_id = ctx.tenant_id
    outbox_ids: list[UUID] = []

    async with get_async_session() as session:
        appointment = await _get_appointment(session, user_id, appointment_id)

        if appointment.is_synced_to_google and appointment.google_event_id:
            event = enqueue(
                session,
                user_id=user_id,
                appointment_id=appointment.id,
                kind=OutboxKind.CALENDAR_DELETE,
                payload={"event_id": appointment.google_event_id},
            )
            outbox_ids.append(event.id)

        await session.delete(appointment)
        await session.commit()

    logger.info(
        f"Appointment {appointment_id} deleted",
        extra={"appointment_id": appointment_id, "user_id": user_id},
    )
    warnings = await dispatch_now(outbox_ids) if outbox_ids else []
    return BookingResult(appointment=appointment, warnings=warnings)


# =============================================================================
# Notifications
# =============================================================================


async def send_notification(
    ctx: SessionContext,
    appointment_id: UUID,
    notification_type: NotificationType | str,
    messaging: EvolutionClient | None = None,
) -> Appointment:
    """
    Send a WhatsApp notification of the given type for an appointment.

    The appointment row stays locked while sending, so two concurrent calls
    for the same type cannot both dispatch.

    Raises:
        ValidationError: Unknown notification type
        NotFoundError: Appointment or template missing
        AlreadySentError: This type was already sent
        MissingPhoneError: Client has no phone number
        ExternalServiceError: WhatsApp not connected or the send failed
    """
    try:
        notification_type = NotificationType(notification_type)
    except ValueError as e:
        raise ValidationError(
            f"Invalid notification type: {notification_type}", {"type": str(notification_type)}
        ) from e

    user_id = ctx.tenant_id
    messaging = messaging or EvolutionClient()
    log_extra = {
        "appointment_id": appointment_id,
        "user_id": user_id,
        "notification_type": notification_type.value,
    }

    async with get_async_session() as session:
        appointment = await _get_appointment(
            session, user_id, appointment_id, for_update=True, with_relations=True
        )

        flags = dict(appointment.messages_sent or {})
        if flags.get(notification_type.value):
            raise AlreadySentError(
                f"{notification_type.value} message was already sent for this appointment",
                {"type": notification_type.value},
            )

        client = appointment.client
        if not client.phone:
            raise MissingPhoneError(
                "Client phone number not found", {"client_id": str(client.id)}
            )

        template = await _get_template(session, user_id, notification_type)
        instance = await _get_instance(session, user_id)

        try:
            state = await call_with_breaker(
                messaging_breaker, messaging.connection_state, instance.instance_name
            )
        except (httpx.HTTPError, pybreaker.CircuitBreakerError) as e:
            raise ExternalServiceError(
                "Could not reach the WhatsApp gateway", {"reason": str(e)}
            ) from e

        if state != STATE_OPEN:
            instance.status = InstanceStatus.DISCONNECTED
            await session.commit()
            raise ExternalServiceError(
                "WhatsApp is not connected; scan the QR code in Settings",
                {"state": state},
            )

        message = render_template(
            template.content,
            name=client.name,
            email=client.email,
            service=appointment.service.name,
            appointment_date=appointment.date,
            appointment_time=appointment.time,
        )
        number = normalize_phone(client.phone)

        try:
            await call_with_breaker(
                messaging_breaker, messaging.send_text, instance.instance_name, number, message
            )
        except (httpx.HTTPError, pybreaker.CircuitBreakerError) as e:
            logger.error(f"WhatsApp {notification_type.value} send failed: {e}", extra=log_extra)
            raise ExternalServiceError(
                "Failed to send WhatsApp message", {"reason": str(e)}
            ) from e

        flags[notification_type.value] = True
        appointment.messages_sent = flags
        instance.status = InstanceStatus.CONNECTED
        await session.commit()

    logger.info(f"WhatsApp {notification_type.value} sent", extra=log_extra)
    return appointment


# =============================================================================
# Queries
# =============================================================================


async def get_appointment(ctx: SessionContext, appointment_id: UUID) -> Appointment:
    async with get_async_session() as session:
        return await _get_appointment(
            session, ctx.tenant_id, appointment_id, with_relations=True
        )


async def list_appointments(
    ctx: SessionContext, view: CalendarView, reference: date
) -> list[Appointment]:
    """Tenant's appointments within the day/week/month around `reference`, by date then time."""
    first, last = view_range(view, reference)
    async with get_async_session() as session:
        result = await session.execute(
            select(Appointment)
            .options(selectinload(Appointment.client), selectinload(Appointment.service))
            .where(
                Appointment.user_id == ctx.tenant_id,
                Appointment.date >= first,
                Appointment.date <= last,
            )
            .order_by(Appointment.date, Appointment.time)
        )
        return list(result.scalars().all())
