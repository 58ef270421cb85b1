"""
Account service - signup, login credentials and password hashing.

Passwords are stored as bcrypt hashes (passlib). New accounts get the
default WhatsApp templates and, best-effort, a WhatsApp instance. The very
first account of an installation becomes admin; later ones are
professionals until an admin changes their role.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional
from uuid import UUID

from passlib.hash import bcrypt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from booking.errors import ConflictError, ExternalServiceError, ValidationError
from booking.services.instance_service import ensure_instance
from booking.services.template_service import seed_default_templates
from booking.utils.password_policy import password_problems
from database.connection import get_async_session
from database.models import User, UserRole

logger = logging.getLogger(__name__)


@dataclass
class SignupResult:
    user: User
    warnings: list[str] = field(default_factory=list)


def hash_password(password: str) -> str:
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a bcrypt hash; malformed hashes never match."""
    try:
        return bcrypt.verify(password, password_hash)
    except ValueError as e:
        logger.error(f"Error verifying password hash: {e}")
        return False


def validate_new_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError(
            "Password must contain " + ", ".join(problems),
            {"password": problems},
        )


def _normalize_email(email: str) -> str:
    email = email.strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("Invalid email address", {"email": email})
    return email


async def signup(email: str, password: str, full_name: Optional[str] = None) -> SignupResult:
    """
    Create an account.

    Raises:
        ValidationError: Invalid email or weak password
        ConflictError: Email already registered
    """
    email = _normalize_email(email)
    validate_new_password(password)

    async with get_async_session() as session:
        existing = await session.execute(select(User.id).where(User.email == email))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("Email already registered", {"email": email})

        user_count = (await session.execute(select(func.count(User.id)))).scalar() or 0
        user = User(
            email=email,
            password_hash=hash_password(password),
            full_name=full_name,
            role=UserRole.ADMIN if user_count == 0 else UserRole.PROFESSIONAL,
        )
        session.add(user)
        try:
            await session.flush()
            await seed_default_templates(session, user.id)
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise ConflictError("Email already registered", {"email": email}) from e

    logger.info(f"User {user.id} signed up as {user.role.value}", extra={"user_id": user.id})

    result = SignupResult(user=user)
    try:
        await ensure_instance(user.id, user.email)
    except ExternalServiceError as e:
        logger.warning(
            f"WhatsApp instance creation failed for user {user.id}: {e.message}",
            extra={"user_id": user.id},
        )
        result.warnings.append(
            "WhatsApp instance could not be created; create it later in Settings"
        )
    return result


async def authenticate(email: str, password: str) -> Optional[User]:
    """Return the user for valid credentials (and stamp last_sign_in_at), else None."""
    email = email.strip().lower()
    async with get_async_session() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is None or not verify_password(password, user.password_hash):
            return None

        user.last_sign_in_at = datetime.now(UTC)
        await session.commit()
        return user


async def get_user(user_id: UUID) -> Optional[User]:
    async with get_async_session() as session:
        return await session.get(User, user_id)
