from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SQLAlchemyEnum
from sqlalchemy import ForeignKey, Index, false
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from messenger.schemas.notification import EntityKind, NotificationType

from .base import BaseModel


class Notification(BaseModel):
    __tablename__ = "notifications"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    actor_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(SQLAlchemyEnum(NotificationType), nullable=False)
    # Polymorphic reference, no foreign key: the target table depends on entity_type
    entity_type = Column(SQLAlchemyEnum(EntityKind), nullable=True)
    entity_id = Column(Uuid(as_uuid=True), nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False, server_default=false())
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    actor = relationship("User", foreign_keys=[actor_id])

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_entity", "entity_type", "entity_id"),
    )
