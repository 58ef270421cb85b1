"""Tests for phone normalization and WhatsApp template rendering."""

from datetime import date, time

import pytest

from booking.utils.messaging import (
    DEFAULT_TEMPLATES,
    normalize_phone,
    render_template,
)
from database.models import NotificationType


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        ["(11) 98765-4321", "11 98765 4321", "11987654321", "+55 (11) 98765-4321", "5511987654321"],
    )
    def test_formats_collapse_to_same_number(self, raw):
        assert normalize_phone(raw) == "5511987654321"

    def test_country_code_not_doubled(self):
        assert normalize_phone("+55 21 3333-4444") == "552133334444"


class TestRenderTemplate:
    def test_every_occurrence_replaced(self):
        content = "{name}, {name}! {service} {date} {time} ({email})"

        rendered = render_template(
            content,
            name="João",
            email="joao@example.com",
            service="Barba",
            appointment_date=date(2024, 12, 1),
            appointment_time=time(8, 0),
        )

        assert rendered == "João, João! Barba 01/12/2024 08:00 (joao@example.com)"

    def test_missing_email_renders_empty(self):
        rendered = render_template(
            "[{email}]",
            name="João",
            email=None,
            service="Barba",
            appointment_date=date(2024, 12, 1),
            appointment_time=time(8, 0),
        )

        assert rendered == "[]"

    def test_unknown_placeholder_left_alone(self):
        rendered = render_template(
            "{name} {price}",
            name="Ana",
            email=None,
            service="Corte",
            appointment_date=date(2024, 1, 1),
            appointment_time=time(9, 0),
        )

        assert rendered == "Ana {price}"

    def test_default_templates_cover_every_type(self):
        assert set(DEFAULT_TEMPLATES) == set(NotificationType)
        for content in DEFAULT_TEMPLATES.values():
            assert "{name}" in content
