from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from messenger.models import Conversation, ConversationMember, Message
from messenger.services.exceptions import ValidationError

from .base import BaseRepository


def direct_key_for(participant_a: UUID, participant_b: UUID) -> str:
    """Canonical key of an unordered participant pair."""
    return ":".join(sorted([str(participant_a), str(participant_b)]))


def _with_relations(stmt):
    return stmt.options(
        selectinload(Conversation.members).selectinload(ConversationMember.user),
        selectinload(Conversation.last_message).selectinload(Message.sender),
    ).execution_options(populate_existing=True)


class ConversationRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session)

    async def get_conversation_by_id(
        self, conversation_id: UUID
    ) -> Conversation | None:
        """Retrieves a conversation with its members and last message loaded."""
        stmt = _with_relations(
            select(Conversation).filter(Conversation.id == conversation_id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_for_participant(
        self, conversation_id: UUID, user_id: UUID
    ) -> Conversation | None:
        """Retrieves a conversation only if user_id is one of its participants."""
        stmt = _with_relations(
            select(Conversation)
            .join(
                ConversationMember,
                ConversationMember.conversation_id == Conversation.id,
            )
            .filter(
                Conversation.id == conversation_id,
                ConversationMember.user_id == user_id,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_direct_conversation(
        self, participant_a: UUID, participant_b: UUID
    ) -> Conversation | None:
        """Finds the unique non-group conversation between two users."""
        stmt = _with_relations(
            select(Conversation).filter(
                Conversation.is_group.is_(False),
                Conversation.direct_key == direct_key_for(participant_a, participant_b),
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create(
        self,
        participants: Sequence[UUID],
        is_group: bool,
        name: str | None = None,
        admins: Iterable[UUID] | None = None,
    ) -> Conversation:
        """Creates a conversation and its member rows.

        Raises:
            ValidationError: if a direct conversation does not have exactly two
                participants.
            IntegrityError: on flush, if a direct conversation for the same pair
                was inserted concurrently.
        """
        if not is_group and len(participants) != 2:
            raise ValidationError(
                "Direct conversation must have exactly two participants."
            )

        now = datetime.now(timezone.utc)
        admin_ids = set(admins or []) if is_group else set()

        conversation = Conversation(
            name=name if is_group else None,
            is_group=is_group,
            direct_key=None if is_group else direct_key_for(*participants),
            last_activity_at=now,
        )
        conversation.members = [
            ConversationMember(user_id=user_id, is_admin=user_id in admin_ids, joined_at=now)
            for user_id in participants
        ]
        self.session.add(conversation)
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def find_for_user(self, user_id: UUID) -> Sequence[Conversation]:
        """Lists the user's conversations, most recently active first."""
        member_of = select(ConversationMember.conversation_id).where(
            ConversationMember.user_id == user_id
        )
        stmt = _with_relations(
            select(Conversation)
            .filter(Conversation.id.in_(member_of))
            .order_by(
                Conversation.last_activity_at.desc().nullslast(),
                Conversation.created_at.desc(),
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def add_participants(
        self, conversation: Conversation, user_ids: Iterable[UUID]
    ) -> Conversation:
        now = datetime.now(timezone.utc)
        present = set(conversation.participant_ids)
        for user_id in user_ids:
            if user_id in present:
                continue
            conversation.members.append(
                ConversationMember(user_id=user_id, is_admin=False, joined_at=now)
            )
            present.add(user_id)
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def remove_participant(
        self, conversation: Conversation, user_id: UUID
    ) -> Conversation:
        """Removes the user from both the participant and the admin lists."""
        for member in list(conversation.members):
            if member.user_id == user_id:
                conversation.members.remove(member)
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def set_admins(
        self, conversation: Conversation, admin_ids: Iterable[UUID]
    ) -> Conversation:
        """Replaces the admin list; ids that are not participants are ignored."""
        admin_ids = set(admin_ids)
        for member in conversation.members:
            member.is_admin = member.user_id in admin_ids
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def set_avatar(
        self, conversation: Conversation, key: str | None, url: str | None
    ) -> Conversation:
        conversation.avatar_key = key
        conversation.avatar_url = url
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def set_last_message(
        self, conversation: Conversation, message: Message
    ) -> Conversation:
        """Points the conversation at its newest message and bumps its activity stamp."""
        conversation.last_message_id = message.id
        conversation.last_activity_at = message.created_at or datetime.now(
            timezone.utc
        )
        await self.session.flush()
        return await self.get_conversation_by_id(conversation.id)

    async def delete(self, conversation_id: UUID) -> None:
        """Deletes the conversation row and its members; messages are left to the caller."""
        await self.session.execute(
            delete(ConversationMember).where(
                ConversationMember.conversation_id == conversation_id
            )
        )
        await self.session.execute(
            delete(Conversation).where(Conversation.id == conversation_id)
        )
        await self.session.flush()
