import uuid
from datetime import datetime

from pydantic import Field

from .common import CamelModel
from .user import UserSummary


class ConversationCreateRequest(CamelModel):
    participants: list[uuid.UUID] = Field(default_factory=list)
    name: str | None = None
    is_group: bool = False


class ParticipantsAddRequest(CamelModel):
    participants: list[uuid.UUID] = Field(default_factory=list)


class LastMessagePreview(CamelModel):
    id: uuid.UUID
    content: str
    sender: UserSummary | None = None
    created_at: datetime


class ConversationResponse(CamelModel):
    id: uuid.UUID
    name: str | None = None
    is_group: bool
    avatar_url: str | None = None
    participants: list[UserSummary]
    admins: list[uuid.UUID]
    last_message: LastMessagePreview | None = None
    updated_at: datetime | None = None
    created_at: datetime
    is_mine: bool


class ConversationRef(CamelModel):
    """Payload of conversation:removed and conversation:deleted."""

    conversation_id: uuid.UUID
