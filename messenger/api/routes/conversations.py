import logging
from uuid import UUID

from fastapi import APIRouter, Depends, File, UploadFile, status

from messenger.api.common import APIResponse, BaseRouter
from messenger.auth_config import current_active_user
from messenger.logic.conversation_processing import (
    handle_add_participants,
    handle_create_conversation,
    handle_delete_conversation,
    handle_get_conversation,
    handle_leave_conversation,
    handle_list_conversations,
    handle_remove_participant,
    handle_update_avatar,
)
from messenger.models import User
from messenger.schemas.conversation import (
    ConversationCreateRequest,
    ParticipantsAddRequest,
)
from messenger.services.dependencies import get_messaging_service
from messenger.services.messaging_service import MessagingService

logger = logging.getLogger(__name__)
conversations_router_instance = APIRouter(prefix="/api/conversations")
router = BaseRouter(router=conversations_router_instance, default_tags=["conversations"])


@router.get("")
async def list_conversations(
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    """Lists the caller's conversations, most recently active first."""
    conversations = await handle_list_conversations(user, messaging_service)
    return APIResponse.success(data={"items": conversations})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: ConversationCreateRequest,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    conversation = await handle_create_conversation(payload, user, messaging_service)
    return APIResponse.success(
        data=conversation,
        message="Conversation created",
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: UUID,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    conversation = await handle_get_conversation(conversation_id, user, messaging_service)
    return APIResponse.success(data=conversation)


@router.post("/{conversation_id}/participants")
async def add_participants(
    conversation_id: UUID,
    payload: ParticipantsAddRequest,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    conversation = await handle_add_participants(
        conversation_id, payload.participants, user, messaging_service
    )
    return APIResponse.success(data=conversation, message="Participants updated")


@router.delete("/{conversation_id}/participants/{participant_id}")
async def remove_participant(
    conversation_id: UUID,
    participant_id: UUID,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    conversation = await handle_remove_participant(
        conversation_id, participant_id, user, messaging_service
    )
    return APIResponse.success(data=conversation, message="Participant removed")


@router.post("/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: UUID,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    await handle_leave_conversation(conversation_id, user, messaging_service)
    return APIResponse.success(message="Left conversation")


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: UUID,
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    await handle_delete_conversation(conversation_id, user, messaging_service)
    return APIResponse.success(message="Conversation deleted")


@router.patch("/{conversation_id}/avatar")
async def update_avatar(
    conversation_id: UUID,
    avatar: UploadFile | None = File(None),
    user: User = Depends(current_active_user),
    messaging_service: MessagingService = Depends(get_messaging_service),
):
    conversation = await handle_update_avatar(
        conversation_id, avatar, user, messaging_service
    )
    return APIResponse.success(data=conversation, message="Avatar updated")
