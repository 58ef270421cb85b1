"""
Utility functions for booking services and API routes.

- messaging: phone normalization and WhatsApp template rendering
- password_policy: password strength rules
- date_ranges: day/week/month calendar view ranges
"""

from booking.utils.date_ranges import CalendarView, view_range
from booking.utils.messaging import (
    DEFAULT_TEMPLATES,
    normalize_phone,
    render_template,
)
from booking.utils.password_policy import is_strong_password, password_problems

__all__ = [
    "CalendarView",
    "view_range",
    "DEFAULT_TEMPLATES",
    "normalize_phone",
    "render_template",
    "is_strong_password",
    "password_problems",
]
