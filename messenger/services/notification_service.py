import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.core.config import settings
from messenger.core.expiring_keys import ExpiringKeySet
from messenger.models import Notification
from messenger.realtime import events
from messenger.realtime.gateway import RealtimeGateway
from messenger.repositories.notification_repository import NotificationRepository
from messenger.repositories.post_repository import PostRepository
from messenger.schemas.common import Pagination
from messenger.schemas.notification import (
    EntityKind,
    NotificationPage,
    NotificationResponse,
    NotificationType,
)

from .exceptions import DatabaseError, NotFoundError
from .serializers import serialize_notification

logger = logging.getLogger(__name__)


def _post_id_of(notification: Notification) -> uuid.UUID | None:
    raw = (notification.details or {}).get("postId")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


class NotificationService:
    def __init__(
        self,
        notification_repository: NotificationRepository,
        post_repository: PostRepository,
        gateway: RealtimeGateway | None = None,
        recent_pushes: ExpiringKeySet | None = None,
    ):
        self.notif_repo = notification_repository
        self.post_repo = post_repository
        self.gateway = gateway
        self.recent_pushes = recent_pushes or ExpiringKeySet(
            settings.NOTIFICATION_DEDUP_SECONDS
        )
        self.session = notification_repository.session

    async def _serialize(self, notification: Notification) -> NotificationResponse:
        preview_url = None
        post_id = _post_id_of(notification)
        if post_id is not None:
            previews = await self.post_repo.get_preview_urls([post_id])
            preview_url = previews.get(post_id)
        return serialize_notification(notification, preview_url)

    async def create_notification(
        self,
        user_id: uuid.UUID,
        actor_id: uuid.UUID,
        type: NotificationType,
        entity=None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """
        Persists a notification for user_id and pushes it to their devices.

        Self-triggered events produce nothing. Notifications are a side
        effect of other mutations, so failures are logged and None is
        returned instead of raising.
        """
        if user_id == actor_id:
            return None

        try:
            notification = await self.notif_repo.create(
                user_id=user_id,
                actor_id=actor_id,
                type=NotificationType(type),
                entity_type=EntityKind(entity.type) if entity is not None else None,
                entity_id=entity.id if entity is not None else None,
                details=metadata,
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Failed to create notification for user {user_id}: {e}",
                exc_info=True,
            )
            return None

        await self._push(notification)
        return notification

    async def _push(self, notification: Notification) -> None:
        if self.gateway is None:
            return
        # One push per (user, notification) within the dedup window
        key = (notification.user_id, notification.id)
        if key in self.recent_pushes:
            logger.debug(f"Skipping duplicate push of notification {notification.id}")
            return
        try:
            payload = await self._serialize(notification)
            await self.gateway.emit_to_users(
                events.NOTIFICATION_NEW, payload, [notification.user_id]
            )
        except Exception as e:
            logger.warning(f"Failed to push notification {notification.id}: {e}")
            return
        self.recent_pushes.add(key)

    async def get_notifications(
        self, user_id: uuid.UUID, page: int = 1, limit: int | None = None
    ) -> NotificationPage:
        limit = limit or settings.NOTIFICATION_PAGE_SIZE
        try:
            notifications = await self.notif_repo.list_for_user(
                user_id, page=page, page_size=limit
            )
            total = await self.notif_repo.count_for_user(user_id)
            total_unread = await self.notif_repo.count_unread(user_id)
            post_ids = [
                post_id
                for post_id in map(_post_id_of, notifications)
                if post_id is not None
            ]
            previews = await self.post_repo.get_preview_urls(post_ids)
        except SQLAlchemyError as e:
            logger.error(f"Database error listing notifications: {e}", exc_info=True)
            raise DatabaseError("Failed to list notifications due to a database error.")

        items = [
            serialize_notification(
                notification, previews.get(_post_id_of(notification))
            )
            for notification in notifications
        ]
        return NotificationPage(
            items=items,
            total_unread=total_unread,
            pagination=Pagination(page=page, limit=limit, count=len(items), total=total),
        )

    async def mark_notification_read(
        self, user_id: uuid.UUID, notification_id: uuid.UUID
    ) -> NotificationResponse:
        notification = await self.notif_repo.get_notification_by_id(notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found.")

        try:
            notification = await self.notif_repo.mark_read(notification)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error marking notification read: {e}", exc_info=True)
            raise DatabaseError("Failed to update notification due to a database error.")

        return await self._serialize(notification)

    async def mark_all_notifications_read(self, user_id: uuid.UUID) -> int:
        try:
            updated = await self.notif_repo.mark_all_read(user_id)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error marking notifications read: {e}", exc_info=True)
            raise DatabaseError("Failed to update notifications due to a database error.")
        logger.info(f"Marked {updated} notification(s) read for user {user_id}")
        return updated

    async def delete_notifications_by_entity(
        self,
        entity_kind: EntityKind,
        entity_ids: Iterable[uuid.UUID],
        type: NotificationType | None = None,
    ) -> int:
        try:
            deleted = await self.notif_repo.delete_by_entity(
                EntityKind(entity_kind), entity_ids, type=type
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database error deleting notifications: {e}", exc_info=True)
            raise DatabaseError("Failed to delete notifications due to a database error.")
        if deleted:
            logger.info(f"Deleted {deleted} notification(s) for {EntityKind(entity_kind).value} entities")
        return deleted


SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


class NotificationDispatcher:
    """
    Runs notification work in the background of the request that caused it.

    Each task gets its own session from ``session_factory`` (the same async
    generator used as the request dependency), so it never shares the
    already committed request session. Pending tasks are tracked for
    ``wait_idle`` and ``shutdown``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: RealtimeGateway | None = None,
        recent_pushes: ExpiringKeySet | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.recent_pushes = recent_pushes or ExpiringKeySet(
            settings.NOTIFICATION_DEDUP_SECONDS
        )
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self, work: Callable[[NotificationService], Awaitable[Any]], label: str = "notification"
    ) -> asyncio.Task | None:
        if self._closed:
            logger.warning(f"Dispatcher closed, dropping {label} work")
            return None
        task = asyncio.get_running_loop().create_task(self._run(work, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self, work: Callable[[NotificationService], Awaitable[Any]], label: str
    ) -> None:
        try:
            # Closing the generator runs the session cleanup even when work raises
            async with aclosing(self.session_factory()) as sessions:
                async for session in sessions:
                    service = NotificationService(
                        NotificationRepository(session),
                        PostRepository(session),
                        self.gateway,
                        self.recent_pushes,
                    )
                    await work(service)
        except Exception as e:
            logger.error(f"Background {label} work failed: {e}", exc_info=True)

    def notify(
        self,
        user_ids: Iterable[uuid.UUID],
        actor_id: uuid.UUID,
        type: NotificationType,
        entity=None,
        metadata: dict[str, Any] | None = None,
    ) -> asyncio.Task | None:
        """Schedules one notification per recipient; the actor is skipped."""
        recipients = [user_id for user_id in dict.fromkeys(user_ids) if user_id != actor_id]
        if not recipients:
            return None

        async def work(service: NotificationService) -> None:
            for user_id in recipients:
                await service.create_notification(
                    user_id, actor_id, type, entity=entity, metadata=metadata
                )

        return self.dispatch(work, label=f"{NotificationType(type).value} notification")

    def purge_entities(
        self,
        entity_kind: EntityKind,
        entity_ids: Iterable[uuid.UUID],
        type: NotificationType | None = None,
    ) -> asyncio.Task | None:
        entity_ids = list(entity_ids)
        if not entity_ids:
            return None

        async def work(service: NotificationService) -> None:
            await service.delete_notifications_by_entity(entity_kind, entity_ids, type)

        return self.dispatch(work, label="notification cleanup")

    async def wait_idle(self) -> None:
        """Waits until every scheduled task, including ones scheduled meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        await self.wait_idle()
        logger.info("Notification dispatcher stopped")
