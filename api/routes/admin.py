"""
Admin API Endpoints

Provides REST endpoints for:
- User listing and role management
- Password reset and account deletion (critical, may require re-auth)
- Admin audit log and its CSV export

All endpoints require the admin role.
"""

import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, Response, status
from pydantic import BaseModel, Field

from api.security import AdminSession
from booking.services.admin_service import (
    DEFAULT_LOG_LIMIT,
    change_role,
    delete_user,
    export_filename,
    export_logs_csv,
    get_logs,
    get_user_emails,
    list_users,
    reset_password,
)
from database.models import AdminLog, User, UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ChangeRoleRequest(BaseModel):
    role: str


class ResetPasswordRequest(BaseModel):
    new_password: str = Field(..., min_length=1)
    confirm_password: str | None = None


class DeleteUserRequest(BaseModel):
    confirm_password: str | None = None


def _user_to_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "last_sign_in_at": user.last_sign_in_at.isoformat() if user.last_sign_in_at else None,
        "created_at": user.created_at.isoformat(),
    }


def _log_to_dict(log: AdminLog) -> dict:
    return {
        "id": str(log.id),
        "admin_email": log.admin.email if log.admin is not None else None,
        "target_user_id": str(log.target_user_id) if log.target_user_id else None,
        "action": log.action,
        "details": log.details,
        "ip_address": log.ip_address,
        "user_agent": log.user_agent,
        "created_at": log.created_at.isoformat(),
    }


# =============================================================================
# Users
# =============================================================================


@router.get("/users")
async def get_users(
    ctx: AdminSession,
    search: str | None = None,
    role: UserRole | None = None,
):
    users = await list_users(ctx, search=search, role=role)
    return {"items": [_user_to_dict(u) for u in users], "total": len(users)}


@router.put("/users/{user_id}/role")
async def update_user_role(user_id: UUID, request: ChangeRoleRequest, ctx: AdminSession):
    user = await change_role(ctx, user_id, request.role)
    return _user_to_dict(user)


@router.post("/users/{user_id}/reset-password")
async def reset_user_password(user_id: UUID, request: ResetPasswordRequest, ctx: AdminSession):
    await reset_password(ctx, user_id, request.new_password, request.confirm_password)
    return {"message": "Password reset"}


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user(user_id: UUID, ctx: AdminSession, request: DeleteUserRequest | None = None):
    """Delete a user; send confirm_password in the body if re-auth is required."""
    await delete_user(ctx, user_id, request.confirm_password if request else None)


# =============================================================================
# Audit Log
# =============================================================================


@router.get("/logs")
async def get_admin_logs(
    ctx: AdminSession,
    limit: int = Query(DEFAULT_LOG_LIMIT, ge=1, le=1000),
):
    logs = await get_logs(ctx, limit=limit)
    return {"items": [_log_to_dict(log) for log in logs], "total": len(logs)}


@router.get("/logs/export")
async def export_admin_logs(
    ctx: AdminSession,
    limit: int = Query(1000, ge=1, le=10000),
):
    """Download the audit log as CSV."""
    logs = await get_logs(ctx, limit=limit)
    target_emails = await get_user_emails({log.target_user_id for log in logs if log.target_user_id})
    content = export_logs_csv(logs, target_emails)
    filename = export_filename(date.today())
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
