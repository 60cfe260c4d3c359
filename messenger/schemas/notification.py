import enum
import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field

from .common import CamelModel, Pagination
from .user import UserSummary


class NotificationType(str, enum.Enum):
    FOLLOW = "follow"
    LIKE_POST = "like_post"
    COMMENT_POST = "comment_post"
    LIKE_COMMENT = "like_comment"
    NEW_POST = "new_post"
    MESSAGE = "message"


class EntityKind(str, enum.Enum):
    USER = "user"
    POST = "post"
    COMMENT = "comment"
    MESSAGE = "message"


class UserRef(CamelModel):
    type: Literal["user"] = "user"
    id: uuid.UUID


class PostRef(CamelModel):
    type: Literal["post"] = "post"
    id: uuid.UUID


class CommentRef(CamelModel):
    type: Literal["comment"] = "comment"
    id: uuid.UUID


class MessageRef(CamelModel):
    type: Literal["message"] = "message"
    id: uuid.UUID


# Tagged union over the entity kinds a notification can point at
EntityRef = Annotated[
    Union[UserRef, PostRef, CommentRef, MessageRef], Field(discriminator="type")
]

_REF_BY_KIND = {
    EntityKind.USER: UserRef,
    EntityKind.POST: PostRef,
    EntityKind.COMMENT: CommentRef,
    EntityKind.MESSAGE: MessageRef,
}


def entity_ref(kind: EntityKind | None, entity_id: uuid.UUID | None):
    """Rebuilds the tagged reference from its stored (kind, id) columns."""
    if kind is None or entity_id is None:
        return None
    return _REF_BY_KIND[kind](id=entity_id)


class NotificationResponse(CamelModel):
    id: uuid.UUID
    type: NotificationType
    actor: UserSummary | None = None
    entity: EntityRef | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime
    preview_url: str | None = None


class NotificationPage(CamelModel):
    items: list[NotificationResponse]
    total_unread: int
    pagination: Pagination
