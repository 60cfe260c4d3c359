"""
Projections of ORM entities onto their wire schemas.

Users are always reduced to ``UserSummary``; ``isMine`` is computed for the
viewer passed in, so the same entity serializes differently per recipient.
"""

import uuid

from messenger.models import Conversation, Message, Notification, User
from messenger.schemas.conversation import ConversationResponse, LastMessagePreview
from messenger.schemas.message import AttachmentResponse, MessageResponse
from messenger.schemas.notification import NotificationResponse, entity_ref
from messenger.schemas.user import UserSummary


def serialize_user(user: User | None) -> UserSummary | None:
    if user is None:
        return None
    return UserSummary(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


def serialize_conversation(
    conversation: Conversation, viewer_id: uuid.UUID | None
) -> ConversationResponse:
    last_message = None
    if conversation.last_message is not None:
        last_message = LastMessagePreview(
            id=conversation.last_message.id,
            content=conversation.last_message.content,
            sender=serialize_user(conversation.last_message.sender),
            created_at=conversation.last_message.created_at,
        )

    return ConversationResponse(
        id=conversation.id,
        name=conversation.name,
        is_group=conversation.is_group,
        avatar_url=conversation.avatar_url,
        participants=[serialize_user(member.user) for member in conversation.members],
        admins=conversation.admin_ids,
        last_message=last_message,
        updated_at=conversation.last_activity_at or conversation.updated_at,
        created_at=conversation.created_at,
        is_mine=viewer_id is not None and conversation.has_participant(viewer_id),
    )


def serialize_message(message: Message, viewer_id: uuid.UUID | None) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender=serialize_user(message.sender),
        content=message.content,
        attachments=[
            AttachmentResponse(
                id=asset.id,
                url=asset.url,
                key=asset.key,
                mime_type=asset.mime_type,
                size=asset.size,
            )
            for asset in message.attachments
        ],
        created_at=message.created_at,
        updated_at=message.updated_at,
        is_mine=viewer_id is not None and message.sender_id == viewer_id,
        delivered_to=message.delivered_to,
        read_by=message.read_by,
    )


def serialize_notification(
    notification: Notification, preview_url: str | None = None
) -> NotificationResponse:
    # Built field by field: the ORM attribute for the JSON column is "details"
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        actor=serialize_user(notification.actor),
        entity=entity_ref(notification.entity_type, notification.entity_id),
        metadata=dict(notification.details or {}),
        is_read=notification.is_read,
        read_at=notification.read_at,
        created_at=notification.created_at,
        preview_url=preview_url,
    )
