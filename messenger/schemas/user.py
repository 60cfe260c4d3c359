import uuid

from fastapi_users import schemas

from .common import CamelModel


class UserRead(schemas.BaseUser[uuid.UUID]):
    username: str
    display_name: str | None = None
    avatar_url: str | None = None


class UserCreate(schemas.BaseUserCreate):
    username: str
    display_name: str | None = None


class UserUpdate(schemas.BaseUserUpdate):
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


# Minimal projection of a user exposed inside conversations, messages and notifications
class UserSummary(CamelModel):
    id: uuid.UUID
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
