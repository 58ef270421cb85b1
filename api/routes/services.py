"""
Service CRUD endpoints (per tenant).

A service referenced by appointments cannot be deleted (409).
"""

import logging
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from api.security import CurrentSession
from booking.errors import ConflictError
from database.connection import get_async_session
from database.models import Service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/services", tags=["services"])


class CreateServiceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    duration_minutes: int = Field(..., gt=0, le=1440)
    price: Decimal = Field(..., ge=0)


class UpdateServiceRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    duration_minutes: int | None = Field(None, gt=0, le=1440)
    price: Decimal | None = Field(None, ge=0)


def _service_to_dict(service: Service) -> dict:
    return {
        "id": str(service.id),
        "name": service.name,
        "duration_minutes": service.duration_minutes,
        "price": str(service.price),
        "created_at": service.created_at.isoformat(),
    }


async def _get_owned_service(session, ctx, service_id: UUID) -> Service:
    result = await session.execute(
        select(Service).where(Service.id == service_id, Service.user_id == ctx.tenant_id)
    )
    service = result.scalar_one_or_none()
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


@router.get("")
async def list_services(ctx: CurrentSession):
    async with get_async_session() as session:
        result = await session.execute(
            select(Service).where(Service.user_id == ctx.tenant_id).order_by(Service.name)
        )
        services = result.scalars().all()
        return {"items": [_service_to_dict(s) for s in services], "total": len(services)}


@router.get("/{service_id}")
async def get_service(service_id: UUID, ctx: CurrentSession):
    async with get_async_session() as session:
        return _service_to_dict(await _get_owned_service(session, ctx, service_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_service(request: CreateServiceRequest, ctx: CurrentSession):
    async with get_async_session() as session:
        service = Service(
            user_id=ctx.tenant_id,
            name=request.name,
            duration_minutes=request.duration_minutes,
            price=request.price,
        )
        session.add(service)
        await session.commit()
        await session.refresh(service)
        return _service_to_dict(service)


@router.put("/{service_id}")
async def update_service(service_id: UUID, request: UpdateServiceRequest, ctx: CurrentSession):
    """
    Update a service. Existing appointments keep their duration and price
    snapshots.
    """
    async with get_async_session() as session:
        service = await _get_owned_service(session, ctx, service_id)
        for field_name, value in request.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(service, field_name, value)
        await session.commit()
        await session.refresh(service)
        return _service_to_dict(service)


@router.delete("/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_service(service_id: UUID, ctx: CurrentSession):
    async with get_async_session() as session:
        service = await _get_owned_service(session, ctx, service_id)
        await session.delete(service)
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise ConflictError(
                "Service is used by existing appointments",
                {"service_id": str(service_id)},
            ) from e
