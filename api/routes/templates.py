"""WhatsApp message template endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from api.security import CurrentSession
from booking.services.template_service import list_templates, save_template
from booking.utils.messaging import PLACEHOLDERS
from database.models import MessageTemplate, NotificationType

router = APIRouter(prefix="/api/templates", tags=["templates"])


class SaveTemplateRequest(BaseModel):
    content: str = Field(..., max_length=4096)


def _template_to_dict(template: MessageTemplate) -> dict:
    return {
        "id": str(template.id),
        "type": template.type.value,
        "content": template.content,
        "updated_at": template.updated_at.isoformat(),
    }


@router.get("")
async def get_templates(ctx: CurrentSession):
    templates = await list_templates(ctx)
    return {
        "items": [_template_to_dict(t) for t in templates],
        "placeholders": list(PLACEHOLDERS),
    }


@router.put("/{notification_type}")
async def put_template(
    notification_type: NotificationType, request: SaveTemplateRequest, ctx: CurrentSession
):
    return _template_to_dict(await save_template(ctx, notification_type, request.content))
