"""
Admin Service - user/role management and the admin audit log.

Every operation requires an admin caller. Admins cannot change their own
role or delete themselves. Password resets and user deletion are critical
actions: when the admin signed in more than REAUTH_WINDOW_MINUTES ago they
must confirm their own password.

Each action writes an AdminLog row (admin, target, action, details, IP and
user agent taken from the SessionContext).
"""

import csv
import io
import logging
from datetime import date, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.context import SessionContext
from booking.errors import AuthorizationError, NotFoundError, ValidationError
from booking.services.auth_service import hash_password, validate_new_password, verify_password
from database.connection import get_async_session
from database.models import AdminLog, User, UserRole
from shared.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100

CSV_HEADERS = ["Data", "Admin", "Usuário Alvo", "Ação", "Detalhes", "IP"]
NOT_AVAILABLE = "N/A"


# =============================================================================
# Guards
# =============================================================================


def require_admin(ctx: SessionContext) -> None:
    if not ctx.is_admin:
        raise AuthorizationError("Admin role required")


async def _require_recent_auth(
    session: AsyncSession, ctx: SessionContext, confirm_password: Optional[str]
) -> None:
    """Critical actions need a sign-in within the window or the password again."""
    settings = get_settings()
    if ctx.authenticated_within(timedelta(minutes=settings.REAUTH_WINDOW_MINUTES)):
        return

    admin = await session.get(User, ctx.user_id)
    if not confirm_password or admin is None or not verify_password(
        confirm_password, admin.password_hash
    ):
        raise AuthorizationError(
            "Please confirm your password to continue",
            {"reauthentication_required": True},
        )


async def _get_target(session: AsyncSession, user_id: UUID) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": str(user_id)})
    return user


def log_admin_action(
    session: AsyncSession,
    ctx: SessionContext,
    action: str,
    target_user_id: Optional[UUID],
    details: Optional[dict[str, Any]] = None,
) -> AdminLog:
    """Add an audit row to the caller's transaction."""
    entry = AdminLog(
        admin_user_id=ctx.user_id,
        target_user_id=target_user_id,
        action=action,
        details=details,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    session.add(entry)
    return entry


# =============================================================================
# Users
# =============================================================================


async def list_users(
    ctx: SessionContext, search: Optional[str] = None, role: Optional[UserRole] = None
) -> list[User]:
    require_admin(ctx)
    async with get_async_session() as session:
        query = select(User)
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(User.email.ilike(pattern), User.full_name.ilike(pattern)))
        if role is not None:
            query = query.where(User.role == role)
        result = await session.execute(query.order_by(User.created_at.desc()))
        return list(result.scalars().all())


async def change_role(ctx: SessionContext, user_id: UUID, new_role: UserRole | str) -> User:
    """
    Raises:
        ValidationError: Unknown role
        AuthorizationError: Caller not admin, or changing own role
        NotFoundError: Target user missing
    """
    require_admin(ctx)
    try:
        new_role = UserRole(new_role)
    except ValueError as e:
        raise ValidationError(f"Invalid role: {new_role}", {"role": str(new_role)}) from e
    if user_id == ctx.user_id:
        raise AuthorizationError("You cannot change your own role")

    async with get_async_session() as session:
        user = await _get_target(session, user_id)
        old_role = user.role
        user.role = new_role
        log_admin_action(
            session,
            ctx,
            "change_role",
            user_id,
            {"old_role": old_role.value, "new_role": new_role.value, "email": user.email},
        )
        await session.commit()

    logger.info(
        f"Admin {ctx.user_id} changed role of {user_id}: {old_role.value} -> {new_role.value}",
        extra={"user_id": ctx.user_id},
    )
    return user


async def reset_password(
    ctx: SessionContext,
    user_id: UUID,
    new_password: str,
    confirm_password: Optional[str] = None,
) -> None:
    """
    Raises:
        ValidationError: Weak password
        AuthorizationError: Caller not admin or re-authentication missing
        NotFoundError: Target user missing
    """
    require_admin(ctx)
    validate_new_password(new_password)

    async with get_async_session() as session:
        await _require_recent_auth(session, ctx, confirm_password)
        user = await _get_target(session, user_id)
        user.password_hash = hash_password(new_password)
        log_admin_action(session, ctx, "reset_password", user_id, {"email": user.email})
        await session.commit()

    logger.info(f"Admin {ctx.user_id} reset password of {user_id}", extra={"user_id": ctx.user_id})


async def delete_user(
    ctx: SessionContext, user_id: UUID, confirm_password: Optional[str] = None
) -> None:
    """
    Delete a user and (by cascade) all of their data.

    Raises:
        AuthorizationError: Caller not admin, deleting self, or re-authentication missing
        NotFoundError: Target user missing
    """
    require_admin(ctx)
    if user_id == ctx.user_id:
        raise AuthorizationError("You cannot delete your own account")

    async with get_async_session() as session:
        await _require_recent_auth(session, ctx, confirm_password)
        user = await _get_target(session, user_id)
        email = user.email
        await session.execute(delete(User).where(User.id == user_id))
        log_admin_action(session, ctx, "delete_user", user_id, {"email": email})
        await session.commit()

    logger.info(f"Admin {ctx.user_id} deleted user {user_id}", extra={"user_id": ctx.user_id})


# =============================================================================
# Audit Log
# =============================================================================


async def get_logs(ctx: SessionContext, limit: int = DEFAULT_LOG_LIMIT) -> list[AdminLog]:
    """Most recent audit entries first."""
    require_admin(ctx)
    if limit < 1:
        raise ValidationError("limit must be positive", {"limit": limit})
    async with get_async_session() as session:
        result = await session.execute(
            select(AdminLog)
            .options(selectinload(AdminLog.admin))
            .order_by(AdminLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def get_user_emails(user_ids: set[UUID]) -> dict[UUID, str]:
    """Emails of target users that still exist (deleted ones are omitted)."""
    if not user_ids:
        return {}
    async with get_async_session() as session:
        result = await session.execute(select(User.id, User.email).where(User.id.in_(user_ids)))
        return {row.id: row.email for row in result.all()}


def _format_details(details: Optional[dict[str, Any]]) -> str:
    if not details:
        return NOT_AVAILABLE
    return "; ".join(f"{key}: {value}" for key, value in details.items())


def export_logs_csv(logs: list[AdminLog], target_emails: dict[UUID, str]) -> str:
    """
    Render audit entries as CSV.

    Columns: Data, Admin, Usuário Alvo, Ação, Detalhes, IP. Dates are
    dd/mm/YYYY HH:MM:SS; missing values are "N/A". A deleted target falls
    back to the email recorded in the entry details.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)

    for log in logs:
        details = log.details or {}
        admin_email = log.admin.email if log.admin is not None else None
        target = target_emails.get(log.target_user_id) if log.target_user_id else None
        target = target or details.get("email")
        writer.writerow(
            [
                log.created_at.strftime("%d/%m/%Y %H:%M:%S"),
                admin_email or NOT_AVAILABLE,
                target or NOT_AVAILABLE,
                log.action,
                _format_details(log.details),
                log.ip_address or NOT_AVAILABLE,
            ]
        )

    return buffer.getvalue()


def export_filename(today: date) -> str:
    return f"admin-logs-{today.isoformat()}.csv"
