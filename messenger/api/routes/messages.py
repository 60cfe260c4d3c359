import logging
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from messenger.api.common import APIResponse, BaseRouter
from messenger.auth_config import current_active_user
from messenger.logic.message_processing import (
    handle_create_message,
    handle_get_messages,
    handle_mark_receipts,
)
from messenger.models import User
from messenger.schemas.message import ReceiptRequest
from messenger.services.dependencies import get_messaging_service
from messenger.services.messaging_service import MessagingService

logger = logging.getLogger(__name__)
messages_router_instance = APIRouter(prefix="/api/messages")
router = BaseRouter(router=messages_router_instance, default_tags=["messages"])


@router.get("/{conversation_id}")
async def get_messages(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    """Returns a page of messages in chronological order, counted from the newest."""
    message_page = await handle_get_messages(
        conversation_id, page, limit, user, messaging_service
    )
    return APIResponse.success(data=message_page)


@router.post("/{conversation_id}", status_code=status.HTTP_201_CREATED)
async def create_message(
    conversation_id: UUID,
    content: str | None = Form(None),
    files: list[UploadFile] | None = File(None),
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    message = await handle_create_message(
        conversation_id, content, files, user, messaging_service
    )
    return APIResponse.success(
        data=message, message="Message sent", status_code=status.HTTP_201_CREATED
    )


@router.post("/{conversation_id}/delivered")
async def mark_delivered(
    conversation_id: UUID,
    payload: ReceiptRequest,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    updated = await handle_mark_receipts(
        conversation_id, payload.message_ids, user, messaging_service, read=False
    )
    return APIResponse.success(data={"updated": updated})


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: UUID,
    payload: ReceiptRequest,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    updated = await handle_mark_receipts(
        conversation_id, payload.message_ids, user, messaging_service, read=True
    )
    return APIResponse.success(data={"updated": updated})
