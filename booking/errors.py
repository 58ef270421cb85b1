"""
Domain error taxonomy for Agenda Pro.

Every error carries a stable error_code, a human-readable message and an
optional details dict. The API layer maps each class to an HTTP status in
api/main.py; services and workers raise them and never return error dicts.
"""

from typing import Any


class AgendaError(Exception):
    """Base class for all domain errors."""

    error_code = "AGENDA_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AgendaError):
    """Missing required field, invalid role, negative price, weak password."""

    error_code = "VALIDATION_ERROR"


class MissingPhoneError(ValidationError):
    """Client has no phone number to notify."""

    error_code = "MISSING_PHONE"


class NotFoundError(AgendaError):
    """Service, client, appointment, template or instance missing for the tenant."""

    error_code = "NOT_FOUND"


class ConflictError(AgendaError):
    """Overlapping booking, or a write rejected by a database constraint."""

    error_code = "CONFLICT"


class AlreadySentError(AgendaError):
    """Notification of this type was already sent for the appointment."""

    error_code = "ALREADY_SENT"


class AuthorizationError(AgendaError):
    """Caller lacks the role or the recent authentication the action requires."""

    error_code = "FORBIDDEN"


class ExternalServiceError(AgendaError):
    """Messaging gateway or calendar provider failure."""

    error_code = "EXTERNAL_SERVICE_ERROR"
