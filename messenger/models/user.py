import uuid

from fastapi_users.db import SQLAlchemyBaseUserTable
from sqlalchemy import Column, Text
from sqlalchemy.orm import relationship

from .base import BaseModel


# Note: SQLAlchemyBaseUserTable requires a specific type for the ID. Uuid works.
class User(SQLAlchemyBaseUserTable[uuid.UUID], BaseModel):
    __tablename__ = "users"

    # id, created_at, updated_at are inherited from BaseModel
    # email, hashed_password, is_active, is_superuser, is_verified are from SQLAlchemyBaseUserTable

    username = Column(
        Text,
        unique=True,
        nullable=False,
        default=lambda: f"user_{uuid.uuid4()}",
    )
    display_name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)

    # String forward references avoid circular imports at module level
    memberships = relationship(
        "ConversationMember",
        back_populates="user",
        foreign_keys="ConversationMember.user_id",
    )
    messages = relationship(
        "Message",
        back_populates="sender",
        foreign_keys="Message.sender_id",
    )
