"""
WhatsApp instance endpoints.

The frontend polls GET while the user scans the QR code; the status worker
keeps the stored state fresh in between.
"""

from fastapi import APIRouter, status

from api.security import CurrentSession
from booking.services.instance_service import (
    delete_instance,
    ensure_instance,
    get_instance_status,
)
from database.models import MessagingInstance

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


def _instance_to_dict(instance: MessagingInstance) -> dict:
    return {
        "instance_name": instance.instance_name,
        "status": instance.status.value,
        "qr_code": instance.qr_code,
        "last_checked_at": (
            instance.last_checked_at.isoformat() if instance.last_checked_at else None
        ),
    }


@router.get("/instance")
async def instance_status(ctx: CurrentSession):
    return _instance_to_dict(await get_instance_status(ctx))


@router.post("/instance", status_code=status.HTTP_201_CREATED)
async def create_instance(ctx: CurrentSession):
    """Create the caller's instance (returns the existing one if present)."""
    return _instance_to_dict(await ensure_instance(ctx.tenant_id, ctx.email))


@router.delete("/instance", status_code=status.HTTP_204_NO_CONTENT)
async def remove_instance(ctx: CurrentSession):
    await delete_instance(ctx)
