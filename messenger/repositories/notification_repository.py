import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.models import Notification
from messenger.schemas.notification import EntityKind, NotificationType

from .base import BaseRepository


class NotificationRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session)

    async def create(
        self,
        user_id: uuid.UUID,
        actor_id: uuid.UUID,
        type: NotificationType,
        entity_type: EntityKind | None = None,
        entity_id: uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> Notification:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            actor_id=actor_id,
            type=type,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details or {},
            is_read=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(notification)
        await self.session.flush()
        return await self.get_notification_by_id(notification.id)

    async def get_notification_by_id(
        self, notification_id: uuid.UUID
    ) -> Notification | None:
        stmt = (
            select(Notification)
            .options(selectinload(Notification.actor))
            .filter(Notification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_for_user(
        self, user_id: uuid.UUID, page: int = 1, page_size: int = 20
    ) -> Sequence[Notification]:
        """Returns one page of the user's notifications, newest first."""
        stmt = (
            select(Notification)
            .options(selectinload(Notification.actor))
            .filter(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_for_user(self, user_id: uuid.UUID) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def count_unread(self, user_id: uuid.UUID) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def mark_read(self, notification: Notification) -> Notification:
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            await self.session.flush()
        return notification

    async def mark_all_read(self, user_id: uuid.UUID) -> int:
        """Flips every unread notification of the user; returns how many changed."""
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0

    async def delete_by_entity(
        self,
        entity_type: EntityKind,
        entity_ids: Iterable[uuid.UUID],
        type: NotificationType | None = None,
    ) -> int:
        entity_ids = list(entity_ids)
        if not entity_ids:
            return 0
        stmt = delete(Notification).where(
            Notification.entity_type == entity_type,
            Notification.entity_id.in_(entity_ids),
        )
        if type is not None:
            stmt = stmt.where(Notification.type == type)
        result = await self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount or 0
