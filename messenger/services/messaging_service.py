import logging
import uuid
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from messenger.core.config import settings
from messenger.core.sanitize import sanitize_text
from messenger.models import Conversation, Message
from messenger.realtime import events
from messenger.realtime.gateway import RealtimeGateway
from messenger.repositories.conversation_repository import ConversationRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.common import Pagination
from messenger.schemas.conversation import ConversationRef
from messenger.schemas.message import (
    MessagePage,
    MessagesDeliveredEvent,
    MessagesReadEvent,
)
from messenger.schemas.notification import EntityKind, MessageRef, NotificationType

from .exceptions import (
    AuthorizationError,
    DatabaseError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from .media_store import IncomingFile, MediaStore, StoredMedia
from .notification_service import NotificationDispatcher
from .serializers import serialize_conversation, serialize_message

logger = logging.getLogger(__name__)

MESSAGE_MEDIA_FOLDER = "messages"
AVATAR_MEDIA_FOLDER = "avatars"


class MessagingService:
    """
    Authorization and orchestration boundary for conversations and messages.

    Every mutation validates the caller against the conversation, changes the
    repositories inside the request session, commits, and only then fans the
    result out through the gateway and the notification dispatcher. Those
    side effects never undo or fail a committed mutation.
    """

    def __init__(
        self,
        conversation_repository: ConversationRepository,
        message_repository: MessageRepository,
        user_repository: UserRepository,
        gateway: RealtimeGateway | None = None,
        media_store: MediaStore | None = None,
        notifier: NotificationDispatcher | None = None,
    ):
        self.conv_repo = conversation_repository
        self.msg_repo = message_repository
        self.user_repo = user_repository
        self.gateway = gateway
        self.media_store = media_store
        self.notifier = notifier
        # The session is shared by the repositories
        self.session = conversation_repository.session

    # Helpers

    async def _load_for_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        try:
            conversation = await self.conv_repo.get_for_participant(
                conversation_id, user_id
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error loading conversation: {e}", exc_info=True)
            raise DatabaseError("Failed to load conversation due to a database error.")
        if conversation is None:
            raise NotFoundError("Conversation not found.")
        return conversation

    async def _ensure_users_exist(self, user_ids: Sequence[uuid.UUID]) -> None:
        found = {user.id for user in await self.user_repo.get_users_by_ids(user_ids)}
        missing = [str(user_id) for user_id in user_ids if user_id not in found]
        if missing:
            raise ValidationError(f"Unknown user(s): {', '.join(missing)}")

    def _require_media_store(self) -> MediaStore:
        if self.media_store is None:
            raise ServiceError("Media storage is not configured.")
        return self.media_store

    async def _emit_to_users(self, event: str, payload, user_ids) -> None:
        if self.gateway is not None:
            await self.gateway.emit_to_users(event, payload, user_ids)

    async def _emit_to_room(self, conversation_id, event: str, payload) -> None:
        if self.gateway is not None:
            await self.gateway.emit_to_room(conversation_id, event, payload)

    async def _discard_uploads(self, uploaded: Iterable[StoredMedia]) -> None:
        keys = [media.key for media in uploaded]
        if keys and self.media_store is not None:
            await self.media_store.delete_many(keys)

    # Conversations

    async def create_conversation(
        self,
        creator_id: uuid.UUID,
        participant_ids: Iterable[uuid.UUID],
        name: str | None = None,
        is_group: bool = False,
    ) -> Conversation:
        """
        Creates a conversation between the creator and participant_ids.

        A direct conversation is unique per pair of users: asking for an
        existing pair returns the existing conversation without broadcasting.
        """
        participants = list(dict.fromkeys([creator_id, *participant_ids]))
        if len(participants) < 2:
            raise ValidationError("Conversation requires at least two participants.")
        if not is_group and len(participants) != 2:
            raise ValidationError(
                "Direct conversation must have exactly two participants."
            )

        await self._ensure_users_exist(participants)

        if not is_group:
            existing = await self.conv_repo.find_direct_conversation(*participants)
            if existing is not None:
                return existing

        try:
            conversation = await self.conv_repo.create(
                participants,
                is_group=is_group,
                name=(sanitize_text(name) or None) if is_group else None,
                admins=[creator_id],
            )
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if not is_group:
                # Another request created the same pair first
                existing = await self.conv_repo.find_direct_conversation(*participants)
                if existing is not None:
                    logger.info(
                        f"Direct conversation {existing.id} created concurrently, reusing it"
                    )
                    return existing
            logger.warning(f"Integrity error creating conversation: {e}", exc_info=True)
            raise DatabaseError("Could not create conversation due to a data conflict.")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error creating conversation: {e}", exc_info=True)
            raise DatabaseError("Failed to create conversation due to a database error.")
        except ServiceError:
            await self.session.rollback()
            raise

        logger.info(
            f"User {creator_id} created {'group' if is_group else 'direct'} "
            f"conversation {conversation.id}"
        )
        await self._emit_to_users(
            events.CONVERSATION_NEW,
            serialize_conversation(conversation, creator_id),
            conversation.participant_ids,
        )
        return conversation

    async def list_conversations(self, user_id: uuid.UUID) -> list[Conversation]:
        try:
            return list(await self.conv_repo.find_for_user(user_id))
        except SQLAlchemyError as e:
            logger.error(f"Database error listing conversations: {e}", exc_info=True)
            raise DatabaseError("Failed to list conversations due to a database error.")

    async def get_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        return await self._load_for_participant(conversation_id, user_id)

    async def ensure_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        """Raises NotFoundError unless user_id participates in the conversation."""
        return await self._load_for_participant(conversation_id, user_id)

    async def add_participants(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        new_participants: Iterable[uuid.UUID],
    ) -> Conversation:
        conversation = await self._load_for_participant(conversation_id, user_id)
        if not conversation.is_group:
            raise ValidationError("Cannot add participants to a direct conversation.")
        if not conversation.is_admin(user_id):
            raise AuthorizationError("Only admins can add participants.")

        to_add = [
            participant_id
            for participant_id in dict.fromkeys(new_participants)
            if not conversation.has_participant(participant_id)
        ]
        if not to_add:
            return conversation

        await self._ensure_users_exist(to_add)

        try:
            conversation = await self.conv_repo.add_participants(conversation, to_add)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error adding participants: {e}", exc_info=True)
            raise DatabaseError("Failed to add participants due to a database error.")

        logger.info(f"User {user_id} added {len(to_add)} participant(s) to {conversation_id}")
        await self._emit_to_users(
            events.CONVERSATION_UPDATE,
            serialize_conversation(conversation, user_id),
            conversation.participant_ids,
        )
        return conversation

    async def remove_participant(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        target_id: uuid.UUID,
    ) -> Conversation:
        """Removes target_id; admins may remove anyone, others only themselves."""
        conversation = await self._load_for_participant(conversation_id, user_id)
        if not conversation.is_group:
            raise ValidationError(
                "Cannot remove participants from a direct conversation."
            )
        if not conversation.is_admin(user_id) and user_id != target_id:
            raise AuthorizationError("Only admins can remove participants.")
        if not conversation.has_participant(target_id):
            raise NotFoundError("Participant not found.")

        try:
            conversation = await self.conv_repo.remove_participant(
                conversation, target_id
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error removing participant: {e}", exc_info=True)
            raise DatabaseError("Failed to remove participant due to a database error.")

        logger.info(f"User {target_id} removed from conversation {conversation_id}")
        if self.gateway is not None:
            self.gateway.leave_conversation_for_user(target_id, conversation_id)
        await self._emit_to_users(
            events.CONVERSATION_UPDATE,
            serialize_conversation(conversation, user_id),
            conversation.participant_ids,
        )
        await self._emit_to_users(
            events.CONVERSATION_REMOVED,
            ConversationRef(conversation_id=conversation_id),
            [target_id],
        )
        return conversation

    async def leave_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        return await self.remove_participant(conversation_id, user_id, user_id)

    async def delete_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> None:
        """
        Deletes the conversation with all of its messages, receipts and
        attachments. Groups require an admin; either side of a direct
        conversation may delete it.
        """
        conversation = await self._load_for_participant(conversation_id, user_id)
        if conversation.is_group and not conversation.is_admin(user_id):
            raise AuthorizationError("Only admins can delete the conversation.")

        former_participants = list(conversation.participant_ids)
        avatar_key = conversation.avatar_key

        try:
            message_ids = await self.msg_repo.list_ids_by_conversation(conversation_id)
            removed_attachments = await self.msg_repo.delete_by_conversation(
                conversation_id
            )
            await self.conv_repo.delete(conversation_id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error deleting conversation: {e}", exc_info=True)
            raise DatabaseError("Failed to delete conversation due to a database error.")

        logger.info(
            f"User {user_id} deleted conversation {conversation_id} "
            f"({len(message_ids)} message(s))"
        )
        await self._emit_to_users(
            events.CONVERSATION_DELETED,
            ConversationRef(conversation_id=conversation_id),
            former_participants,
        )
        if self.gateway is not None:
            self.gateway.close_room(conversation_id)

        keys = [key for key, _url in removed_attachments]
        if avatar_key:
            keys.append(avatar_key)
        if keys and self.media_store is not None:
            await self.media_store.delete_many(keys)

        if message_ids and self.notifier is not None:
            self.notifier.purge_entities(
                EntityKind.MESSAGE, message_ids, NotificationType.MESSAGE
            )

    async def set_conversation_avatar(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        file: IncomingFile | None,
    ) -> Conversation:
        conversation = await self._load_for_participant(conversation_id, user_id)
        if not conversation.is_group:
            raise ValidationError("Direct conversations cannot have an avatar.")
        if not conversation.is_admin(user_id):
            raise AuthorizationError("Only admins can change the avatar.")
        if file is None or not file.data:
            raise ValidationError("Avatar image is required.")
        if not (file.content_type or "").startswith("image/"):
            raise ValidationError("Only image files are allowed.")
        if file.size > settings.MAX_AVATAR_BYTES:
            raise ValidationError("Avatar image is too large.")

        store = self._require_media_store()
        try:
            stored = await store.upload(file, AVATAR_MEDIA_FOLDER)
        except Exception as e:
            logger.error(f"Avatar upload failed: {e}", exc_info=True)
            raise ServiceError("Failed to upload avatar.")

        previous_key = conversation.avatar_key
        try:
            conversation = await self.conv_repo.set_avatar(
                conversation, stored.key, stored.url
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            await self._discard_uploads([stored])
            logger.error(f"Database error updating avatar: {e}", exc_info=True)
            raise DatabaseError("Failed to update avatar due to a database error.")

        if previous_key:
            await store.delete_many([previous_key])

        await self._emit_to_users(
            events.CONVERSATION_UPDATE,
            serialize_conversation(conversation, user_id),
            conversation.participant_ids,
        )
        return conversation

    # Messages

    def _validate_attachments(self, files: Sequence[IncomingFile]) -> None:
        if len(files) > settings.MAX_MESSAGE_ATTACHMENTS:
            raise ValidationError(
                f"A message can have at most {settings.MAX_MESSAGE_ATTACHMENTS} attachments."
            )
        for file in files:
            if not (file.content_type or "").startswith("image/"):
                raise ValidationError("Only image files are allowed.")
            if not file.data:
                raise ValidationError(f"Attachment {file.filename} is empty.")
            if file.size > settings.MAX_ATTACHMENT_BYTES:
                raise ValidationError(f"Attachment {file.filename} is too large.")

    async def create_message(
        self,
        conversation_id: uuid.UUID,
        sender_id: uuid.UUID,
        content: str | None,
        files: Sequence[IncomingFile] = (),
    ) -> Message:
        """
        Stores a message and fans it out.

        The message goes to every participant's personal channel and to the
        conversation room, then one ``message`` notification per recipient
        is scheduled in the background.
        """
        conversation = await self._load_for_participant(conversation_id, sender_id)

        files = list(files or [])
        sanitized = sanitize_text(content)
        if not sanitized and not files:
            raise ValidationError("Message cannot be empty.")
        if len(sanitized) > settings.MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message cannot exceed {settings.MESSAGE_MAX_LENGTH} characters."
            )
        self._validate_attachments(files)

        uploaded: list[StoredMedia] = []
        if files:
            store = self._require_media_store()
            try:
                for file in files:
                    uploaded.append(await store.upload(file, MESSAGE_MEDIA_FOLDER))
            except Exception as e:
                await self._discard_uploads(uploaded)
                logger.error(f"Attachment upload failed: {e}", exc_info=True)
                raise ServiceError("Failed to upload attachments.")

        try:
            message = await self.msg_repo.create(
                conversation_id, sender_id, sanitized, uploaded
            )
            conversation = await self.conv_repo.set_last_message(conversation, message)
            message = await self.msg_repo.get_message_by_id(message.id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            await self._discard_uploads(uploaded)
            logger.error(f"Database error creating message: {e}", exc_info=True)
            raise DatabaseError("Failed to send message due to a database error.")
        except Exception as e:
            await self.session.rollback()
            await self._discard_uploads(uploaded)
            logger.error(f"Unexpected error creating message: {e}", exc_info=True)
            raise ServiceError("An unexpected error occurred while sending the message.")

        payload = serialize_message(message, sender_id)
        await self._emit_to_users(
            events.MESSAGE_NEW, payload, conversation.participant_ids
        )
        await self._emit_to_room(conversation_id, events.MESSAGE_NEW, payload)

        if self.notifier is not None:
            self.notifier.notify(
                conversation.participant_ids,
                sender_id,
                NotificationType.MESSAGE,
                entity=MessageRef(id=message.id),
                metadata={"conversationId": str(conversation_id)},
            )
        return message

    async def get_messages(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int | None = None,
    ) -> MessagePage:
        """Returns one page counted from the newest message, in chronological order."""
        await self._load_for_participant(conversation_id, user_id)
        page = max(page, 1)
        limit = limit or settings.MESSAGE_PAGE_SIZE

        try:
            messages = await self.msg_repo.list_by_conversation(
                conversation_id, page=page, page_size=limit
            )
            total = await self.msg_repo.count_by_conversation(conversation_id)
        except SQLAlchemyError as e:
            logger.error(f"Database error listing messages: {e}", exc_info=True)
            raise DatabaseError("Failed to list messages due to a database error.")

        items = [serialize_message(message, user_id) for message in reversed(messages)]
        return MessagePage(
            items=items,
            pagination=Pagination(page=page, limit=limit, count=len(items), total=total),
        )

    async def mark_messages_delivered(
        self,
        conversation_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
        user_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        """Records delivery to user_id; returns the ids whose state changed."""
        conversation = await self._load_for_participant(conversation_id, user_id)
        message_ids = list(dict.fromkeys(message_ids))
        if not message_ids:
            return []

        try:
            changed = await self.msg_repo.mark_delivered(
                conversation_id, message_ids, user_id
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error marking delivered: {e}", exc_info=True)
            raise DatabaseError("Failed to update messages due to a database error.")

        payload = MessagesDeliveredEvent(
            conversation_id=conversation_id, message_ids=message_ids, user_id=user_id
        )
        await self._emit_to_users(
            events.MESSAGE_DELIVERED, payload, conversation.participant_ids
        )
        await self._emit_to_room(conversation_id, events.MESSAGE_DELIVERED, payload)
        return changed

    async def mark_messages_read(
        self,
        conversation_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
        user_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        """Records that user_id read the messages; returns the ids whose state changed."""
        conversation = await self._load_for_participant(conversation_id, user_id)
        message_ids = list(dict.fromkeys(message_ids))
        if not message_ids:
            return []

        try:
            changed = await self.msg_repo.mark_read(conversation_id, message_ids, user_id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error marking read: {e}", exc_info=True)
            raise DatabaseError("Failed to update messages due to a database error.")

        payload = MessagesReadEvent(
            conversation_id=conversation_id, message_ids=message_ids, reader_id=user_id
        )
        await self._emit_to_users(
            events.MESSAGE_READ, payload, conversation.participant_ids
        )
        await self._emit_to_room(conversation_id, events.MESSAGE_READ, payload)
        return changed
