import uuid
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.models import Conversation, MediaAsset, Message, MessageReceipt
from messenger.schemas.message import ReceiptKind
from messenger.services.media_store import StoredMedia

from .base import BaseRepository


def _with_relations(stmt):
    return stmt.options(
        selectinload(Message.sender),
        selectinload(Message.attachments),
        selectinload(Message.receipts),
    ).execution_options(populate_existing=True)


class MessageRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session)

    async def get_message_by_id(self, message_id: uuid.UUID) -> Message | None:
        stmt = _with_relations(
            select(Message).filter(Message.id == message_id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create(
        self,
        conversation_id: uuid.UUID,
        sender_id: uuid.UUID,
        content: str,
        attachments: Sequence[StoredMedia] = (),
    ) -> Message:
        """Creates a message delivered to its sender only, with ordered attachments."""
        now = datetime.now(timezone.utc)
        message = Message(
            id=uuid.uuid4(),
            content=content,
            conversation_id=conversation_id,
            sender_id=sender_id,
            created_at=now,
            updated_at=now,
        )
        message.attachments = [
            MediaAsset(
                owner_id=sender_id,
                key=media.key,
                url=media.url,
                mime_type=media.mime_type,
                size=media.size,
                position=position,
            )
            for position, media in enumerate(attachments)
        ]
        message.receipts = [
            MessageReceipt(
                user_id=sender_id, kind=ReceiptKind.DELIVERED, created_at=now
            )
        ]
        self.session.add(message)
        await self.session.flush()
        return await self.get_message_by_id(message.id)

    async def list_by_conversation(
        self, conversation_id: uuid.UUID, page: int = 1, page_size: int = 30
    ) -> list[Message]:
        """Returns one page of messages, newest first."""
        stmt = _with_relations(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_conversation(self, conversation_id: uuid.UUID) -> int:
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def list_ids_by_conversation(
        self, conversation_id: uuid.UUID
    ) -> list[uuid.UUID]:
        stmt = select(Message.id).where(Message.conversation_id == conversation_id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def _add_receipts(
        self,
        conversation_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
        user_id: uuid.UUID,
        kind: ReceiptKind,
    ) -> list[uuid.UUID]:
        message_ids = list(dict.fromkeys(message_ids))
        if not message_ids:
            return []

        in_conversation = select(Message.id).where(
            Message.conversation_id == conversation_id,
            Message.id.in_(message_ids),
        )
        already = select(MessageReceipt.message_id).where(
            MessageReceipt.user_id == user_id,
            MessageReceipt.kind == kind,
            MessageReceipt.message_id.in_(message_ids),
        )
        candidates = set((await self.session.execute(in_conversation)).scalars().all())
        candidates -= set((await self.session.execute(already)).scalars().all())

        # Keep the caller's order
        changed = [message_id for message_id in message_ids if message_id in candidates]
        now = datetime.now(timezone.utc)
        self.session.add_all(
            MessageReceipt(message_id=message_id, user_id=user_id, kind=kind, created_at=now)
            for message_id in changed
        )
        await self.session.flush()
        return changed

    async def mark_delivered(
        self,
        conversation_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
        user_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        """Adds user_id to deliveredTo of the given messages; returns the ids that changed."""
        return await self._add_receipts(
            conversation_id, message_ids, user_id, ReceiptKind.DELIVERED
        )

    async def mark_read(
        self,
        conversation_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
        user_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        """Adds user_id to readBy of the given messages; returns the ids that changed."""
        return await self._add_receipts(
            conversation_id, message_ids, user_id, ReceiptKind.READ
        )

    async def delete_by_conversation(
        self, conversation_id: uuid.UUID
    ) -> list[tuple[str, str]]:
        """
        Deletes every message of the conversation with its receipts and
        attachment rows.

        Returns the (key, url) of each removed attachment so the caller can
        clean up the stored objects once the transaction has committed.
        """
        message_ids = select(Message.id).where(
            Message.conversation_id == conversation_id
        )

        assets = await self.session.execute(
            select(MediaAsset.key, MediaAsset.url).where(
                MediaAsset.message_id.in_(message_ids)
            )
        )
        removed = [(key, url) for key, url in assets.all()]

        await self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_id=None)
        )

        await self.session.execute(
            delete(MessageReceipt).where(MessageReceipt.message_id.in_(message_ids))
        )
        await self.session.execute(
            delete(MediaAsset).where(MediaAsset.message_id.in_(message_ids))
        )
        await self.session.execute(
            delete(Message).where(Message.conversation_id == conversation_id)
        )
        await self.session.flush()
        return removed
