import uuid
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.models import MediaAsset

from .base import BaseRepository


class PostRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session)

    async def get_preview_urls(
        self, post_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, str]:
        """Maps each post id to the URL of its first media asset, in one query."""
        post_ids = list(set(post_ids))
        if not post_ids:
            return {}
        stmt = (
            select(MediaAsset.post_id, MediaAsset.url)
            .where(MediaAsset.post_id.in_(post_ids))
            .order_by(MediaAsset.post_id, MediaAsset.position)
        )
        result = await self.session.execute(stmt)
        previews: dict[uuid.UUID, str] = {}
        for post_id, url in result.all():
            previews.setdefault(post_id, url)
        return previews
