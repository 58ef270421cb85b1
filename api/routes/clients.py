"""
Client CRUD endpoints (per tenant).
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select

from api.security import CurrentSession
from database.connection import get_async_session
from database.models import Client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/clients", tags=["clients"])


class CreateClientRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, max_length=30)


class UpdateClientRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, max_length=30)


def _client_to_dict(client: Client) -> dict:
    return {
        "id": str(client.id),
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "created_at": client.created_at.isoformat(),
    }


async def _get_owned_client(session, ctx, client_id: UUID) -> Client:
    result = await session.execute(
        select(Client).where(Client.id == client_id, Client.user_id == ctx.tenant_id)
    )
    client = result.scalar_one_or_none()
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


@router.get("")
async def list_clients(ctx: CurrentSession, search: str | None = None):
    """List the tenant's clients with optional search."""
    async with get_async_session() as session:
        query = select(Client).where(Client.user_id == ctx.tenant_id)
        if search:
            search_pattern = f"%{search}%"
            query = query.where(
                (Client.name.ilike(search_pattern))
                | (Client.email.ilike(search_pattern))
                | (Client.phone.ilike(search_pattern))
            )
        result = await session.execute(query.order_by(Client.name))
        clients = result.scalars().all()
        return {"items": [_client_to_dict(c) for c in clients], "total": len(clients)}


@router.get("/{client_id}")
async def get_client(client_id: UUID, ctx: CurrentSession):
    async with get_async_session() as session:
        return _client_to_dict(await _get_owned_client(session, ctx, client_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_client(request: CreateClientRequest, ctx: CurrentSession):
    async with get_async_session() as session:
        client = Client(
            user_id=ctx.tenant_id,
            name=request.name,
            email=request.email,
            phone=request.phone,
        )
        session.add(client)
        await session.commit()
        await session.refresh(client)
        return _client_to_dict(client)


@router.put("/{client_id}")
async def update_client(client_id: UUID, request: UpdateClientRequest, ctx: CurrentSession):
    async with get_async_session() as session:
        client = await _get_owned_client(session, ctx, client_id)
        for field_name, value in request.model_dump(exclude_unset=True).items():
            if field_name == "name" and value is None:
                continue
            setattr(client, field_name, value)
        await session.commit()
        await session.refresh(client)
        return _client_to_dict(client)


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(client_id: UUID, ctx: CurrentSession):
    """Delete a client together with its appointments."""
    async with get_async_session() as session:
        client = await _get_owned_client(session, ctx, client_id)
        await session.delete(client)
        await session.commit()
