from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.db import get_db_session

from .conversation_repository import ConversationRepository
from .message_repository import MessageRepository
from .notification_repository import NotificationRepository
from .post_repository import PostRepository
from .user_repository import UserRepository


def get_conversation_repository(
    session: AsyncSession = Depends(get_db_session),
) -> ConversationRepository:
    return ConversationRepository(session)


def get_message_repository(
    session: AsyncSession = Depends(get_db_session),
) -> MessageRepository:
    """Dependency provider for MessageRepository."""
    return MessageRepository(session)


def get_user_repository(
    session: AsyncSession = Depends(get_db_session),
) -> UserRepository:
    """Dependency provider for UserRepository."""
    return UserRepository(session)


def get_notification_repository(
    session: AsyncSession = Depends(get_db_session),
) -> NotificationRepository:
    return NotificationRepository(session)


def get_post_repository(
    session: AsyncSession = Depends(get_db_session),
) -> PostRepository:
    return PostRepository(session)
