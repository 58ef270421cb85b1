"""
SQLAlchemy ORM models for Agenda Pro.

This module defines the tables:
- users: tenant accounts (one business/professional each) with a role
- clients, services, appointments: per-tenant booking data
- message_templates: WhatsApp templates, one per notification type per tenant
- messaging_instances: Evolution API WhatsApp instance per tenant
- google_tokens: Google Calendar OAuth tokens per tenant
- admin_logs: audit trail of admin panel actions
- outbox_events: pending calendar sync effects

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for flexible payloads
"""

import datetime as dt
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DATE,
    TIME,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class UserRole(str, PyEnum):
    """Role of a user account."""

    ADMIN = "admin"
    PROFESSIONAL = "professional"
    RECEPTIONIST = "receptionist"


class AppointmentStatus(str, PyEnum):
    """Appointment status. Changed only by direct edits."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class NotificationType(str, PyEnum):
    """WhatsApp notification types tracked in appointments.messages_sent."""

    CONFIRMATION = "confirmation"
    REMINDER_24H = "reminder_24h"
    REMINDER_1H = "reminder_1h"
    CANCELLATION = "cancellation"


class InstanceStatus(str, PyEnum):
    """Connection status of a WhatsApp instance."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class OutboxKind(str, PyEnum):
    """Secondary effect carried by an outbox row."""

    CALENDAR_CREATE = "calendar.create"
    CALENDAR_UPDATE = "calendar.update"
    CALENDAR_DELETE = "calendar.delete"


class OutboxStatus(str, PyEnum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


def default_messages_sent() -> dict[str, bool]:
    """All notification flags start false."""
    return {notification.value: False for notification in NotificationType}


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# ============================================================================
# Accounts
# ============================================================================


class User(Base):
    """
    User model - a tenant account.

    Each user owns its clients, services, appointments, templates, WhatsApp
    instance and Google token. Admins can additionally manage other users.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name="user_role", values_callable=_enum_values),
        default=UserRole.PROFESSIONAL,
        nullable=False,
    )
    last_sign_in_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"


# ============================================================================
# Booking Data
# ============================================================================


class Client(Base):
    """Client model - contacts of a tenant. Phone is used for WhatsApp."""

    __tablename__ = "clients"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    appointments: Mapped[list["Appointment"]] = relationship(
        "Appointment", back_populates="client"
    )

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, name='{self.name}')>"


class Service(Base):
    """Service model - offerings with fixed duration and price."""

    __tablename__ = "services"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_service_duration_positive"),
        CheckConstraint("price >= 0", name="check_service_price_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Service(id={self.id}, name='{self.name}', "
            f"duration={self.duration_minutes}min, price={self.price})>"
        )


class Appointment(Base):
    """
    Appointment model - a booking of one service for one client.

    date/time are local wall-clock values (settings.TIMEZONE). price and
    duration_minutes are copied from the service when booked so later service
    edits do not change existing appointments.

    Overlap between non-cancelled appointments of the same tenant is checked
    in booking.overlap and enforced by the appointments_no_overlap exclusion
    constraint (see the alembic migration).
    """

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    # Foreign keys
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("services.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Scheduling (local wall clock)
    date: Mapped[dt.date] = mapped_column(DATE, nullable=False)
    time: Mapped[dt.time] = mapped_column(TIME, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=_enum_values,
        ),
        default=AppointmentStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Notification flags: {"confirmation": bool, "reminder_24h": bool, ...}
    messages_sent: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=default_messages_sent, nullable=False
    )

    # Google Calendar
    google_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_synced_to_google: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    client: Mapped["Client"] = relationship("Client", back_populates="appointments")
    service: Mapped["Service"] = relationship("Service")

    __table_args__ = (
        CheckConstraint("duration_minutes >= 0", name="check_appointment_duration_non_negative"),
        CheckConstraint("price >= 0", name="check_appointment_price_non_negative"),
        Index("idx_appointments_user_date_time", "user_id", "date", "time"),
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, date={self.date}, time={self.time}, "
            f"status={self.status})>"
        )


# ============================================================================
# Notifications & Integrations
# ============================================================================


class MessageTemplate(Base):
    """WhatsApp message template with {name} {email} {date} {service} {time} placeholders."""

    __tablename__ = "message_templates"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, name="notification_type", values_callable=_enum_values),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", name="uq_message_templates_user_type"),
    )

    def __repr__(self) -> str:
        return f"<MessageTemplate(user_id={self.user_id}, type={self.type})>"


class MessagingInstance(Base):
    """Evolution API WhatsApp instance owned by a user."""

    __tablename__ = "messaging_instances"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    instance_name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[InstanceStatus] = mapped_column(
        SQLEnum(InstanceStatus, name="instance_status", values_callable=_enum_values),
        default=InstanceStatus.DISCONNECTED,
        nullable=False,
    )
    qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<MessagingInstance(name='{self.instance_name}', status={self.status})>"


class GoogleToken(Base):
    """Google OAuth2 tokens for a user's primary calendar."""

    __tablename__ = "google_tokens"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<GoogleToken(user_id={self.user_id}, expires_at={self.expires_at})>"


# ============================================================================
# Admin & Outbox
# ============================================================================


class AdminLog(Base):
    """Audit trail entry for an admin panel action."""

    __tablename__ = "admin_logs"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    admin_user_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Not a foreign key: the row must survive deletion of the target user
    target_user_id: Mapped[UUID | None] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False, index=True
    )

    admin: Mapped[Optional["User"]] = relationship("User", foreign_keys=[admin_user_id])

    def __repr__(self) -> str:
        return f"<AdminLog(action='{self.action}', admin={self.admin_user_id})>"


class OutboxEvent(Base):
    """
    Outbox row for a secondary effect of a booking write.

    Written in the same transaction as the appointment change, dispatched
    right after commit and retried by the outbox worker until done/failed.
    appointment_id is not a foreign key because delete events outlive the row.
    """

    __tablename__ = "outbox_events"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    appointment_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    kind: Mapped[OutboxKind] = mapped_column(
        SQLEnum(OutboxKind, name="outbox_kind", values_callable=_enum_values),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    status: Mapped[OutboxStatus] = mapped_column(
        SQLEnum(OutboxStatus, name="outbox_status", values_callable=_enum_values),
        default=OutboxStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index(
            "idx_outbox_events_due",
            "next_attempt_at",
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, kind={self.kind}, status={self.status}, "
            f"attempts={self.attempts})>"
        )
