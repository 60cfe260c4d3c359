import enum
import uuid
from datetime import datetime

from pydantic import Field

from .common import CamelModel, Pagination
from .user import UserSummary


class ReceiptKind(str, enum.Enum):
    DELIVERED = "delivered"
    READ = "read"


class AttachmentResponse(CamelModel):
    id: uuid.UUID
    url: str
    key: str
    mime_type: str
    size: int


class MessageResponse(CamelModel):
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender: UserSummary | None = None
    content: str
    attachments: list[AttachmentResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None
    is_mine: bool = False
    delivered_to: list[uuid.UUID] = Field(default_factory=list)
    read_by: list[uuid.UUID] = Field(default_factory=list)


class MessagePage(CamelModel):
    items: list[MessageResponse]
    pagination: Pagination


class ReceiptRequest(CamelModel):
    message_ids: list[uuid.UUID] = Field(default_factory=list)


# Realtime payloads


class MessagesDeliveredEvent(CamelModel):
    conversation_id: uuid.UUID
    message_ids: list[uuid.UUID]
    user_id: uuid.UUID


class MessagesReadEvent(CamelModel):
    conversation_id: uuid.UUID
    message_ids: list[uuid.UUID]
    reader_id: uuid.UUID


class TypingEvent(CamelModel):
    conversation_id: uuid.UUID
    user_id: uuid.UUID
