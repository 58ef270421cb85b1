"""Dashboard KPI endpoint."""

from datetime import date

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select

from api.security import CurrentSession
from booking.utils.date_ranges import CalendarView, view_range
from database.connection import get_async_session
from database.models import Appointment, AppointmentStatus, Client

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


class DashboardKPIs(BaseModel):
    appointments_today: int
    appointments_this_month: int
    revenue_this_month: str
    total_clients: int


@router.get("/kpis", response_model=DashboardKPIs)
async def get_dashboard_kpis(ctx: CurrentSession):
    """Counts exclude cancelled appointments."""
    today = date.today()
    month_start, month_end = view_range(CalendarView.MONTH, today)
    active = Appointment.status != AppointmentStatus.CANCELLED

    async with get_async_session() as session:
        today_result = await session.execute(
            select(func.count(Appointment.id)).where(
                Appointment.user_id == ctx.tenant_id,
                Appointment.date == today,
                active,
            )
        )
        appointments_today = today_result.scalar() or 0

        month_result = await session.execute(
            select(func.count(Appointment.id), func.sum(Appointment.price)).where(
                Appointment.user_id == ctx.tenant_id,
                Appointment.date >= month_start,
                Appointment.date <= month_end,
                active,
            )
        )
        appointments_this_month, revenue = month_result.one()

        clients_result = await session.execute(
            select(func.count(Client.id)).where(Client.user_id == ctx.tenant_id)
        )
        total_clients = clients_result.scalar() or 0

    return DashboardKPIs(
        appointments_today=appointments_today,
        appointments_this_month=appointments_this_month or 0,
        revenue_this_month=str(revenue or 0),
        total_clients=total_clients,
    )
