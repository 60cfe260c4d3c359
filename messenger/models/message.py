from sqlalchemy import Column, DateTime, Enum as SQLAlchemyEnum, ForeignKey, Index, Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from messenger.schemas.message import ReceiptKind

from .base import BaseModel


class Message(BaseModel):
    __tablename__ = "messages"

    # created_at is set by the repository at microsecond precision so that
    # messages sent within the same second keep their insertion order.
    content = Column(Text, nullable=False, default="")
    conversation_id = Column(
        Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    sender_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)

    # Relationships
    conversation = relationship("Conversation", foreign_keys=[conversation_id])
    sender = relationship("User", back_populates="messages", foreign_keys=[sender_id])
    attachments = relationship(
        "MediaAsset",
        back_populates="message",
        order_by="MediaAsset.position",
        foreign_keys="MediaAsset.message_id",
    )
    receipts = relationship(
        "MessageReceipt",
        back_populates="message",
        order_by="MessageReceipt.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    def _receipt_user_ids(self, kind: ReceiptKind) -> list:
        return [receipt.user_id for receipt in self.receipts if receipt.kind == kind]

    @property
    def delivered_to(self) -> list:
        return self._receipt_user_ids(ReceiptKind.DELIVERED)

    @property
    def read_by(self) -> list:
        return self._receipt_user_ids(ReceiptKind.READ)


class MessageReceipt(BaseModel):
    __tablename__ = "message_receipts"

    message_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    kind = Column(SQLAlchemyEnum(ReceiptKind), nullable=False)
    # Overrides the server default so receipt order is preserved within a second
    created_at = Column(DateTime(timezone=True), nullable=False)

    message = relationship("Message", back_populates="receipts")

    __table_args__ = (
        UniqueConstraint(
            "message_id", "user_id", "kind", name="uq_message_receipt_user_kind"
        ),
    )
