"""
Interval overlap checker for appointment booking.

Pure functions, no I/O. An appointment occupies the closed-open interval
[date+time, date+time+duration). Two intervals overlap iff
start_a < end_b and start_b < end_a, so back-to-back bookings are allowed
and zero-duration intervals never collide with adjacent ones.

Existing appointments are compared only when they fall on the candidate's
date, are not the appointment being edited and are not cancelled. The
duration of an existing appointment is its own snapshot, falling back to
the linked service's duration. When neither is known the appointment is
treated as conflicting (fail closed) so a missing service can never let a
double booking through.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from uuid import UUID

from database.models import AppointmentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A slot being booked: local date, start time and length in minutes."""

    date: date
    start: time
    duration_minutes: int

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.date, self.start)

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Closed-open interval intersection test."""
    return start_a < end_b and start_b < end_a


def _resolve_duration(
    appointment: Any, service_durations: Mapping[UUID, int] | None
) -> Optional[int]:
    duration = getattr(appointment, "duration_minutes", None)
    if duration is not None:
        return duration
    if service_durations is None:
        return None
    return service_durations.get(appointment.service_id)


def _is_cancelled(appointment: Any) -> bool:
    return getattr(appointment, "status", None) == AppointmentStatus.CANCELLED


def find_conflict(
    candidate: Candidate,
    exclude_id: UUID | None,
    existing: Iterable[Any],
    service_durations: Mapping[UUID, int] | None = None,
) -> Optional[Any]:
    """
    Return the first existing appointment that overlaps the candidate.

    Args:
        candidate: Slot being booked
        exclude_id: Id of the appointment being updated (skipped), or None
        existing: Appointments of the tenant (objects with id, date, time,
            status, service_id and optionally duration_minutes)
        service_durations: service_id -> duration_minutes, used when an
            appointment has no duration snapshot

    Returns:
        The conflicting appointment, or None if the slot is free
    """
    start = candidate.start_at
    end = candidate.end_at

    for appointment in existing:
        if appointment.date != candidate.date:
            continue
        if exclude_id is not None and appointment.id == exclude_id:
            continue
        if _is_cancelled(appointment):
            continue

        duration = _resolve_duration(appointment, service_durations)
        if duration is None:
            logger.warning(
                f"Appointment {appointment.id} has no resolvable duration; "
                f"treating it as a conflict",
                extra={"appointment_id": appointment.id},
            )
            return appointment

        existing_start = datetime.combine(appointment.date, appointment.time)
        existing_end = existing_start + timedelta(minutes=duration)

        if intervals_overlap(start, end, existing_start, existing_end):
            return appointment

    return None


def has_conflict(
    candidate: Candidate,
    exclude_id: UUID | None,
    existing: Iterable[Any],
    service_durations: Mapping[UUID, int] | None = None,
) -> bool:
    """True if the candidate overlaps any admissible existing appointment."""
    return find_conflict(candidate, exclude_id, existing, service_durations) is not None
