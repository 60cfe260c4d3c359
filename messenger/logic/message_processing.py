import logging
from uuid import UUID

from fastapi import UploadFile

from messenger.models import User
from messenger.schemas.message import MessagePage, MessageResponse
from messenger.services.exceptions import ServiceError
from messenger.services.messaging_service import MessagingService
from messenger.services.serializers import serialize_message

from .uploads import read_uploads

logger = logging.getLogger(__name__)


async def handle_create_message(
    conversation_id: UUID,
    content: str | None,
    files: list[UploadFile] | None,
    user: User,
    messaging_service: MessagingService,
) -> MessageResponse:
    """Sends a message with optional image attachments on behalf of user."""
    try:
        incoming = await read_uploads(files)
        message = await messaging_service.create_message(
            conversation_id, user.id, content, incoming
        )
        return serialize_message(message, user.id)
    except ServiceError as e:
        logger.info(f"Handler: Service error creating message: {e}")
        raise
    except Exception as e:
        logger.error(f"Handler: Unexpected error creating message: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while sending the message.")


async def handle_get_messages(
    conversation_id: UUID,
    page: int,
    limit: int | None,
    user: User,
    messaging_service: MessagingService,
) -> MessagePage:
    try:
        return await messaging_service.get_messages(
            conversation_id, user.id, page=page, limit=limit
        )
    except ServiceError as e:
        logger.info(f"Service error listing messages: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error listing messages: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while listing messages.")


async def handle_mark_receipts(
    conversation_id: UUID,
    message_ids: list[UUID],
    user: User,
    messaging_service: MessagingService,
    read: bool,
) -> list[UUID]:
    """Marks the messages delivered to, or read by, user."""
    try:
        if read:
            return await messaging_service.mark_messages_read(
                conversation_id, message_ids, user.id
            )
        return await messaging_service.mark_messages_delivered(
            conversation_id, message_ids, user.id
        )
    except ServiceError as e:
        logger.info(f"Service error updating receipts: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error updating receipts: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while updating messages.")
