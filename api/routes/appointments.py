"""
Appointment endpoints: calendar listing, booking writes and WhatsApp
notifications.

Booking writes return the appointment plus `warnings` for secondary
effects (Google Calendar sync) that failed and will be retried.
"""

import datetime as dt
import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import inspect

from api.security import CurrentSession
from booking.services.appointment_service import (
    AppointmentInput,
    BookingResult,
    create_appointment,
    delete_appointment,
    get_appointment,
    list_appointments,
    send_notification,
    update_appointment,
)
from booking.utils.date_ranges import CalendarView
from booking.utils.messaging import format_time
from database.models import Appointment, AppointmentStatus, NotificationType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


class CreateAppointmentRequest(BaseModel):
    client_id: UUID
    service_id: UUID
    date: dt.date
    time: dt.time
    price: Decimal | None = Field(None, ge=0)
    notes: str | None = None


class UpdateAppointmentRequest(BaseModel):
    client_id: UUID | None = None
    service_id: UUID | None = None
    date: dt.date | None = None
    time: dt.time | None = None
    price: Decimal | None = Field(None, ge=0)
    notes: str | None = None
    status: AppointmentStatus | None = None


def _appointment_to_dict(appointment: Appointment) -> dict[str, Any]:
    """Serialize columns, plus client/service names when they were loaded."""
    unloaded = inspect(appointment).unloaded
    data = {
        "id": str(appointment.id),
        "client_id": str(appointment.client_id),
        "service_id": str(appointment.service_id),
        "date": appointment.date.isoformat(),
        "time": format_time(appointment.time),
        "duration_minutes": appointment.duration_minutes,
        "price": str(appointment.price),
        "notes": appointment.notes,
        "status": appointment.status.value,
        "messages_sent": appointment.messages_sent,
        "google_event_id": appointment.google_event_id,
        "is_synced_to_google": appointment.is_synced_to_google,
        "created_at": appointment.created_at.isoformat(),
    }
    if "client" not in unloaded and appointment.client is not None:
        data["client"] = {
            "name": appointment.client.name,
            "email": appointment.client.email,
            "phone": appointment.client.phone,
        }
    if "service" not in unloaded and appointment.service is not None:
        data["service_name"] = appointment.service.name
    return data


def _result_to_dict(result: BookingResult) -> dict[str, Any]:
    return {
        "appointment": _appointment_to_dict(result.appointment),
        "warnings": result.warnings,
    }


@router.get("")
async def list_calendar(
    ctx: CurrentSession,
    view: CalendarView = CalendarView.WEEK,
    date: dt.date | None = None,
):
    """Appointments in the day/week/month containing `date` (default today)."""
    appointments = await list_appointments(ctx, view, date or dt.date.today())
    return {
        "view": view.value,
        "items": [_appointment_to_dict(a) for a in appointments],
        "total": len(appointments),
    }


@router.get("/{appointment_id}")
async def get_appointment_detail(appointment_id: UUID, ctx: CurrentSession):
    return _appointment_to_dict(await get_appointment(ctx, appointment_id))


@router.post("", status_code=201)
async def book_appointment(request: CreateAppointmentRequest, ctx: CurrentSession):
    result = await create_appointment(
        ctx,
        AppointmentInput(
            client_id=request.client_id,
            service_id=request.service_id,
            date=request.date,
            time=request.time,
            price=request.price,
            notes=request.notes,
        ),
    )
    return _result_to_dict(result)


@router.put("/{appointment_id}")
async def edit_appointment(
    appointment_id: UUID, request: UpdateAppointmentRequest, ctx: CurrentSession
):
    """Partial update: only fields present in the body are changed."""
    changes = request.model_dump(exclude_unset=True)
    result = await update_appointment(ctx, appointment_id, changes)
    return _result_to_dict(result)


@router.delete("/{appointment_id}")
async def remove_appointment(appointment_id: UUID, ctx: CurrentSession):
    result = await delete_appointment(ctx, appointment_id)
    return {"deleted": str(appointment_id), "warnings": result.warnings}


@router.post("/{appointment_id}/notifications/{notification_type}")
async def notify_client(
    appointment_id: UUID, notification_type: NotificationType, ctx: CurrentSession
):
    """Send a WhatsApp notification; each type is sent at most once."""
    appointment = await send_notification(ctx, appointment_id, notification_type)
    return {
        "appointment_id": str(appointment.id),
        "type": notification_type.value,
        "messages_sent": appointment.messages_sent,
    }
