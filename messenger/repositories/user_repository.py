import uuid
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.models import User

from .base import BaseRepository


class UserRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session)

    async def get_user_by_id(self, user_id: uuid.UUID) -> User | None:
        """Retrieves a user by their ID."""
        stmt = select(User).filter(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_user_by_email(self, email: str) -> User | None:
        stmt = select(User).filter(User.email == email)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_users_by_ids(self, user_ids: Iterable[uuid.UUID]) -> Sequence[User]:
        """Retrieves the existing users among user_ids; unknown ids are skipped."""
        user_ids = list(set(user_ids))
        if not user_ids:
            return []
        stmt = select(User).filter(User.id.in_(user_ids))
        result = await self.session.execute(stmt)
        return result.scalars().all()
