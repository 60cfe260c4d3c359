import logging
from uuid import UUID

from messenger.models import User
from messenger.schemas.notification import NotificationPage, NotificationResponse
from messenger.services.exceptions import ServiceError
from messenger.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


async def handle_list_notifications(
    page: int,
    limit: int | None,
    user: User,
    notification_service: NotificationService,
) -> NotificationPage:
    try:
        return await notification_service.get_notifications(
            user.id, page=max(page, 1), limit=limit
        )
    except ServiceError as e:
        logger.info(f"Service error listing notifications: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error listing notifications: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while listing notifications.")


async def handle_mark_notification_read(
    notification_id: UUID, user: User, notification_service: NotificationService
) -> NotificationResponse:
    try:
        return await notification_service.mark_notification_read(user.id, notification_id)
    except ServiceError as e:
        logger.info(f"Service error marking notification read: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error marking notification read: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while updating the notification.")


async def handle_mark_all_notifications_read(
    user: User, notification_service: NotificationService
) -> int:
    try:
        return await notification_service.mark_all_notifications_read(user.id)
    except ServiceError as e:
        logger.info(f"Service error marking notifications read: {e}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error marking notifications read: {e}", exc_info=True)
        raise ServiceError("An unexpected error occurred while updating notifications.")
