from fastapi import Depends
from starlette.requests import HTTPConnection

from messenger.realtime.gateway import RealtimeGateway
from messenger.repositories.conversation_repository import ConversationRepository
from messenger.repositories.dependencies import (
    get_conversation_repository,
    get_message_repository,
    get_notification_repository,
    get_post_repository,
    get_user_repository,
)
from messenger.repositories.message_repository import MessageRepository
from messenger.repositories.notification_repository import NotificationRepository
from messenger.repositories.post_repository import PostRepository
from messenger.repositories.user_repository import UserRepository

from .media_store import MediaStore
from .messaging_service import MessagingService
from .notification_service import NotificationDispatcher, NotificationService

# Long-lived collaborators are created by the application lifespan and kept
# on app.state; a missing one (e.g. the app was never started) turns the
# related side effect into a no-op.


def get_gateway(connection: HTTPConnection) -> RealtimeGateway | None:
    return getattr(connection.app.state, "gateway", None)


def get_notification_dispatcher(
    connection: HTTPConnection,
) -> NotificationDispatcher | None:
    return getattr(connection.app.state, "notification_dispatcher", None)


def get_media_store(connection: HTTPConnection) -> MediaStore | None:
    return getattr(connection.app.state, "media_store", None)


def get_messaging_service(
    conv_repo: ConversationRepository = Depends(get_conversation_repository),
    msg_repo: MessageRepository = Depends(get_message_repository),
    user_repo: UserRepository = Depends(get_user_repository),
    gateway: RealtimeGateway | None = Depends(get_gateway),
    media_store: MediaStore | None = Depends(get_media_store),
    notifier: NotificationDispatcher | None = Depends(get_notification_dispatcher),
) -> MessagingService:
    """Provides a MessagingService bound to the request session."""
    return MessagingService(
        conversation_repository=conv_repo,
        message_repository=msg_repo,
        user_repository=user_repo,
        gateway=gateway,
        media_store=media_store,
        notifier=notifier,
    )


def get_notification_service(
    notif_repo: NotificationRepository = Depends(get_notification_repository),
    post_repo: PostRepository = Depends(get_post_repository),
    gateway: RealtimeGateway | None = Depends(get_gateway),
    notifier: NotificationDispatcher | None = Depends(get_notification_dispatcher),
) -> NotificationService:
    """Provides a NotificationService sharing the dispatcher's push dedup window."""
    return NotificationService(
        notification_repository=notif_repo,
        post_repository=post_repo,
        gateway=gateway,
        recent_pushes=notifier.recent_pushes if notifier is not None else None,
    )
