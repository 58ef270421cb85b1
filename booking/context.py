"""
Explicit per-request session context.

A SessionContext is built from a verified session token by the API layer
(api/security.py) and passed to every service call. Services take the
tenant from it instead of from any global state.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from database.models import UserRole


@dataclass(frozen=True)
class SessionContext:
    """Authenticated caller of a request."""

    user_id: UUID
    email: str
    role: UserRole
    token_id: str
    authenticated_at: datetime
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def tenant_id(self) -> UUID:
        """Each user is its own tenant."""
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def authenticated_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """True if the password was entered less than `window` ago."""
        now = now or datetime.now(UTC)
        return now - self.authenticated_at < window
