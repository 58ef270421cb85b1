"""Calendar view ranges used by the appointments list."""

from calendar import monthrange
from datetime import date, timedelta
from enum import Enum


class CalendarView(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def view_range(view: CalendarView, reference: date) -> tuple[date, date]:
    """
    Inclusive (first, last) dates shown by a calendar view.

    Weeks run Sunday to Saturday.

    Example:
        >>> view_range(CalendarView.WEEK, date(2024, 1, 10))
        (datetime.date(2024, 1, 7), datetime.date(2024, 1, 13))
    """
    if view == CalendarView.DAY:
        return reference, reference
    if view == CalendarView.WEEK:
        # weekday(): Monday=0 .. Sunday=6
        start = reference - timedelta(days=(reference.weekday() + 1) % 7)
        return start, start + timedelta(days=6)
    last_day = monthrange(reference.year, reference.month)[1]
    return reference.replace(day=1), reference.replace(day=last_day)
