from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from .base import BaseModel


class Conversation(BaseModel):
    __tablename__ = "conversations"

    # id, created_at, updated_at are inherited from BaseModel
    name = Column(Text, nullable=True)
    is_group = Column(Boolean, nullable=False, default=False, server_default=false())
    # Sorted "a:b" of the two participant ids; NULL for groups.
    direct_key = Column(Text, unique=True, nullable=True)
    avatar_key = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    last_message_id = Column(
        Uuid(as_uuid=True),
        ForeignKey(
            "messages.id",
            use_alter=True,
            ondelete="SET NULL",
            name="fk_conversations_last_message_id",
        ),
        nullable=True,
    )
    last_activity_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    members = relationship(
        "ConversationMember",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMember.joined_at",
    )
    last_message = relationship(
        "Message", foreign_keys=[last_message_id], post_update=True
    )

    @property
    def participant_ids(self) -> list:
        return [member.user_id for member in self.members]

    @property
    def admin_ids(self) -> list:
        return [member.user_id for member in self.members if member.is_admin]

    def has_participant(self, user_id) -> bool:
        return any(member.user_id == user_id for member in self.members)

    def is_admin(self, user_id) -> bool:
        return any(
            member.user_id == user_id and member.is_admin for member in self.members
        )


class ConversationMember(BaseModel):
    __tablename__ = "conversation_members"

    conversation_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    is_admin = Column(Boolean, nullable=False, default=False, server_default=false())
    joined_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="members")
    user = relationship("User", back_populates="memberships", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "user_id", name="uq_conversation_member_user"
        ),
    )
