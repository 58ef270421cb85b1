"""WhatsApp message templates: one per notification type per user."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking.context import SessionContext
from booking.errors import ValidationError
from booking.utils.messaging import DEFAULT_TEMPLATES
from database.connection import get_async_session
from database.models import MessageTemplate, NotificationType

logger = logging.getLogger(__name__)


async def seed_default_templates(session: AsyncSession, user_id: UUID) -> None:
    """Add the default templates a user is missing (caller commits)."""
    result = await session.execute(
        select(MessageTemplate.type).where(MessageTemplate.user_id == user_id)
    )
    present = set(result.scalars().all())
    for notification_type, content in DEFAULT_TEMPLATES.items():
        if notification_type not in present:
            session.add(
                MessageTemplate(user_id=user_id, type=notification_type, content=content)
            )


async def list_templates(ctx: SessionContext) -> list[MessageTemplate]:
    async with get_async_session() as session:
        result = await session.execute(
            select(MessageTemplate)
            .where(MessageTemplate.user_id == ctx.tenant_id)
            .order_by(MessageTemplate.type)
        )
        return list(result.scalars().all())


async def save_template(
    ctx: SessionContext, notification_type: NotificationType | str, content: str
) -> MessageTemplate:
    """
    Create or replace the template for a notification type.

    Raises:
        ValidationError: Unknown type or empty content
    """
    try:
        notification_type = NotificationType(notification_type)
    except ValueError as e:
        raise ValidationError(
            f"Invalid notification type: {notification_type}", {"type": str(notification_type)}
        ) from e
    if not content.strip():
        raise ValidationError("Template content cannot be empty", {"field": "content"})

    async with get_async_session() as session:
        result = await session.execute(
            select(MessageTemplate).where(
                MessageTemplate.user_id == ctx.tenant_id,
                MessageTemplate.type == notification_type,
            )
        )
        template = result.scalar_one_or_none()
        if template is None:
            template = MessageTemplate(
                user_id=ctx.tenant_id, type=notification_type, content=content
            )
            session.add(template)
        else:
            template.content = content
        await session.commit()
        await session.refresh(template)

    logger.info(
        f"Template {notification_type.value} saved",
        extra={"user_id": ctx.tenant_id, "notification_type": notification_type.value},
    )
    return template
