"""
WhatsApp message helpers: phone normalization and template rendering.

Templates use the placeholders {name} {email} {date} {service} {time}.
Dates are rendered in Brazilian format (dd/mm/YYYY) and times as HH:MM.
"""

import re
from datetime import date, time

from database.models import NotificationType

BRAZIL_COUNTRY_CODE = "55"

PLACEHOLDERS = ("name", "email", "date", "service", "time")

# Seeded for every new account; users edit them from the templates page
DEFAULT_TEMPLATES: dict[NotificationType, str] = {
    NotificationType.CONFIRMATION: (
        "Olá {name}! Seu agendamento de {service} está confirmado para "
        "{date} às {time}. Até breve!"
    ),
    NotificationType.REMINDER_24H: (
        "Olá {name}! Lembrete: amanhã, {date}, às {time} você tem {service} "
        "agendado conosco."
    ),
    NotificationType.REMINDER_1H: (
        "Olá {name}! Seu horário de {service} é daqui a 1 hora, às {time}. "
        "Estamos te esperando!"
    ),
    NotificationType.CANCELLATION: (
        "Olá {name}. Seu agendamento de {service} em {date} às {time} foi "
        "cancelado. Entre em contato para remarcar."
    ),
}

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number for the WhatsApp gateway.

    Strips every non-digit and prefixes the Brazilian country code (55)
    when it is not already there.

    Example:
        >>> normalize_phone("(11) 98765-4321")
        '5511987654321'
        >>> normalize_phone("+55 11 98765-4321")
        '5511987654321'
    """
    digits = _NON_DIGITS.sub("", phone)
    if not digits.startswith(BRAZIL_COUNTRY_CODE):
        digits = BRAZIL_COUNTRY_CODE + digits
    return digits


def format_date_br(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def render_template(
    content: str,
    *,
    name: str,
    email: str | None,
    service: str,
    appointment_date: date,
    appointment_time: time,
) -> str:
    """Replace every placeholder occurrence; missing email renders as empty text."""
    values = {
        "name": name,
        "email": email or "",
        "date": format_date_br(appointment_date),
        "service": service,
        "time": format_time(appointment_time),
    }
    rendered = content
    for placeholder in PLACEHOLDERS:
        rendered = rendered.replace("{" + placeholder + "}", values[placeholder])
    return rendered
