import logging
from uuid import UUID

from fastapi import UploadFile

# Logic behind the conversation routes, kept apart from FastAPI so it can be
# exercised directly.
from messenger.models import User
from messenger.schemas.conversation import ConversationCreateRequest, ConversationResponse
from messenger.services.exceptions import ServiceError
from messenger.services.messaging_service import MessagingService
from messenger.services.serializers import serialize_conversation

from .uploads import read_upload

logger = logging.getLogger(__name__)


async def handle_create_conversation(
    payload: ConversationCreateRequest,
    creator_user: User,
    messaging_service: MessagingService,
) -> ConversationResponse:
    """
    Creates a conversation, or returns the existing one for a direct pair.

    Raises:
        ValidationError: too few participants, unknown users, or a direct
            conversation with other than two participants.
        DatabaseError: if the conversation could not be stored.
    """
    try:
        conversation = await messaging_service.create_conversation(
            creator_id=creator_user.id,
            participant_ids=payload.participants,
            name=payload.name,
            is_group=payload.is_group,
        )
        return serialize_conversation(conversation, creator_user.id)
    except ServiceError as e:
        logger.info(f"Handler: Service error creating conversation: {e}")
        raise
    except Exception as e:
        logger.error(f"Handler: Unexpected error creating conversation: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred during conversation creation.")


async def handle_list_conversations(
    user: User, messaging_service: MessagingService
) -> list[ConversationResponse]:
    try:
        conversations = await messaging_service.list_conversations(user.id)
        return [serialize_conversation(c, user.id) for c in conversations]
    except ServiceError as e:
        logger.error(f"Service error listing conversations: {e}", exc_info=True)
        raise
    except Exception as e:
        logger.error(f"Unexpected error in handle_list_conversations: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while listing conversations.")


async def handle_get_conversation(
    conversation_id: UUID, user: User, messaging_service: MessagingService
) -> ConversationResponse:
    logger.debug(f"Handler: Getting conversation {conversation_id} for user {user.id}")
    try:
        conversation = await messaging_service.get_conversation(conversation_id, user.id)
        return serialize_conversation(conversation, user.id)
    except ServiceError as e:
        logger.info(f"Handler: Service error getting conversation {conversation_id}: {e}")
        raise
    except Exception as e:
        logger.error(
            f"Handler: Unexpected error getting conversation {conversation_id}: {e}",
            exc_info=True,
        )
        raise ServiceError(
            f"An unexpected error occurred while retrieving conversation {conversation_id}."
        )


async def handle_add_participants(
    conversation_id: UUID,
    participant_ids: list[UUID],
    user: User,
    messaging_service: MessagingService,
) -> ConversationResponse:
    try:
        conversation = await messaging_service.add_participants(
            conversation_id, user.id, participant_ids
        )
        return serialize_conversation(conversation, user.id)
    except ServiceError as e:
        logger.info(f"Service error adding participants: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error adding participants: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while adding participants.")


async def handle_remove_participant(
    conversation_id: UUID,
    target_id: UUID,
    user: User,
    messaging_service: MessagingService,
) -> ConversationResponse:
    try:
        conversation = await messaging_service.remove_participant(
            conversation_id, user.id, target_id
        )
        return serialize_conversation(conversation, user.id)
    except ServiceError as e:
        logger.info(f"Service error removing participant: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error removing participant: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while removing the participant.")


async def handle_leave_conversation(
    conversation_id: UUID, user: User, messaging_service: MessagingService
) -> None:
    try:
        await messaging_service.leave_conversation(conversation_id, user.id)
    except ServiceError as e:
        logger.info(f"Service error leaving conversation: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error leaving conversation: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while leaving the conversation.")


async def handle_delete_conversation(
    conversation_id: UUID, user: User, messaging_service: MessagingService
) -> None:
    try:
        await messaging_service.delete_conversation(conversation_id, user.id)
    except ServiceError as e:
        logger.info(f"Service error deleting conversation: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error deleting conversation: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while deleting the conversation.")


async def handle_update_avatar(
    conversation_id: UUID,
    avatar: UploadFile | None,
    user: User,
    messaging_service: MessagingService,
) -> ConversationResponse:
    try:
        file = await read_upload(avatar)
        conversation = await messaging_service.set_conversation_avatar(
            conversation_id, user.id, file
        )
        return serialize_conversation(conversation, user.id)
    except ServiceError as e:
        logger.info(f"Service error updating avatar: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error updating avatar: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while updating the avatar.")
