import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from messenger.api.common import APIResponse, BaseRouter
from messenger.auth_config import current_active_user
from messenger.logic.notification_processing import (
    handle_list_notifications,
    handle_mark_all_notifications_read,
    handle_mark_notification_read,
)
from messenger.models import User
from messenger.services.dependencies import get_notification_service
from messenger.services.notification_service import NotificationService

logger = logging.getLogger(__name__)
notifications_router_instance = APIRouter(prefix="/api/notifications")
router = BaseRouter(router=notifications_router_instance, default_tags=["notifications"])


@router.get("")
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
    user: User = Depends(current_active_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    notification_page = await handle_list_notifications(
        page, limit, user, notification_service
    )
    return APIResponse.success(data=notification_page)


@router.patch("/read-all")
async def mark_all_read(
    user: User = Depends(current_active_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    updated = await handle_mark_all_notifications_read(user, notification_service)
    return APIResponse.success(data={"updated": updated})


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: UUID,
    user: User = Depends(current_active_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    notification = await handle_mark_notification_read(
        notification_id, user, notification_service
    )
    return APIResponse.success(data=notification)
