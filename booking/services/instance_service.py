"""
WhatsApp Instance Service - one Evolution API instance per user.

Instances are created at signup (best-effort) or on demand from Settings.
Status is refreshed on request and by the instance status worker; while an
instance is disconnected a fresh pairing QR code is stored with it.

If the gateway no longer knows an instance (404), the local row is removed
so the user can create a new one.
"""

import logging
import re
import secrets
from datetime import UTC, datetime
from typing import Optional
from uuid import UUID

import httpx
import pybreaker
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking.context import SessionContext
from booking.errors import ExternalServiceError, NotFoundError
from database.connection import get_async_session
from database.models import InstanceStatus, MessagingInstance
from shared.circuit_breaker import call_with_breaker, messaging_breaker
from shared.config import get_settings
from shared.evolution_client import STATE_OPEN, EvolutionClient, is_not_found

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (httpx.HTTPError, pybreaker.CircuitBreakerError)


def instance_name_for(email: str, user_id: UUID) -> str:
    """
    Instance name derived from the email local part.

    A short user id suffix keeps names unique across domains
    (ana@a.com and ana@b.com).
    """
    settings = get_settings()
    local_part = email.split("@", 1)[0].lower()
    slug = re.sub(r"[^a-z0-9]+", "-", local_part).strip("-") or "user"
    return f"{settings.EVOLUTION_INSTANCE_PREFIX}-{slug}-{user_id.hex[:6]}"


async def _get_instance_row(session: AsyncSession, user_id: UUID) -> Optional[MessagingInstance]:
    result = await session.execute(
        select(MessagingInstance).where(MessagingInstance.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def ensure_instance(
    user_id: UUID, email: str, client: EvolutionClient | None = None
) -> MessagingInstance:
    """
    Return the user's instance, creating it on the gateway if needed.

    Raises:
        ExternalServiceError: Gateway refused or is unreachable
    """
    client = client or EvolutionClient()

    async with get_async_session() as session:
        instance = await _get_instance_row(session, user_id)
        if instance is not None:
            return instance

        name = instance_name_for(email, user_id)
        token = secrets.token_urlsafe(24)
        try:
            response = await call_with_breaker(
                messaging_breaker, client.create_instance, name, token
            )
        except GATEWAY_ERRORS as e:
            raise ExternalServiceError(
                "Could not create WhatsApp instance", {"reason": str(e)}
            ) from e

        qrcode = response.get("qrcode") if isinstance(response, dict) else None
        instance = MessagingInstance(
            user_id=user_id,
            instance_name=name,
            token=token,
            status=InstanceStatus.DISCONNECTED,
            qr_code=qrcode.get("base64") if isinstance(qrcode, dict) else None,
            last_checked_at=datetime.now(UTC),
        )
        session.add(instance)
        await session.commit()

    logger.info(
        f"WhatsApp instance {name} created for user {user_id}",
        extra={"user_id": user_id, "instance_name": name},
    )
    return instance


async def refresh_status(
    session: AsyncSession, instance: MessagingInstance, client: EvolutionClient
) -> bool:
    """
    Query the gateway and store status (and QR code while disconnected).

    Returns:
        False if the gateway no longer has the instance; the row is deleted
        from the session and the caller commits

    Raises:
        httpx.HTTPError / pybreaker.CircuitBreakerError on gateway failures
    """
    try:
        state = await call_with_breaker(
            messaging_breaker, client.connection_state, instance.instance_name
        )
        if state == STATE_OPEN:
            instance.status = InstanceStatus.CONNECTED
            instance.qr_code = None
        else:
            instance.status = InstanceStatus.DISCONNECTED
            instance.qr_code = await call_with_breaker(
                messaging_breaker, client.connect, instance.instance_name
            )
    except httpx.HTTPStatusError as e:
        if not is_not_found(e):
            raise
        logger.warning(
            f"Instance {instance.instance_name} not found on gateway, removing",
            extra={"instance_name": instance.instance_name},
        )
        await session.delete(instance)
        return False

    instance.last_checked_at = datetime.now(UTC)
    return True


async def get_instance_status(
    ctx: SessionContext, client: EvolutionClient | None = None
) -> MessagingInstance:
    """
    Current status of the caller's instance, refreshed from the gateway.

    Raises:
        NotFoundError: User has no instance (or the gateway lost it)
        ExternalServiceError: Gateway unreachable
    """
    client = client or EvolutionClient()

    async with get_async_session() as session:
        instance = await _get_instance_row(session, ctx.tenant_id)
        if instance is None:
            raise NotFoundError("WhatsApp instance not found")

        try:
            exists = await refresh_status(session, instance, client)
        except GATEWAY_ERRORS as e:
            raise ExternalServiceError(
                "Could not reach the WhatsApp gateway", {"reason": str(e)}
            ) from e

        await session.commit()

    if not exists:
        raise NotFoundError("WhatsApp instance no longer exists; create a new one")
    return instance


async def delete_instance(ctx: SessionContext, client: EvolutionClient | None = None) -> None:
    """
    Delete the caller's instance from the gateway and locally.

    Raises:
        NotFoundError: User has no instance
        ExternalServiceError: Gateway refused or is unreachable
    """
    client = client or EvolutionClient()

    async with get_async_session() as session:
        instance = await _get_instance_row(session, ctx.tenant_id)
        if instance is None:
            raise NotFoundError("WhatsApp instance not found")

        try:
            await call_with_breaker(messaging_breaker, client.delete_instance, instance.instance_name)
        except httpx.HTTPStatusError as e:
            if not is_not_found(e):
                raise ExternalServiceError(
                    "Could not delete WhatsApp instance", {"reason": str(e)}
                ) from e
        except GATEWAY_ERRORS as e:
            raise ExternalServiceError(
                "Could not delete WhatsApp instance", {"reason": str(e)}
            ) from e

        await session.delete(instance)
        await session.commit()

    logger.info(
        f"WhatsApp instance {instance.instance_name} deleted",
        extra={"user_id": ctx.tenant_id, "instance_name": instance.instance_name},
    )
