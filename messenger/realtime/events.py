from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Server to client
CONVERSATION_NEW = "conversation:new"
CONVERSATION_UPDATE = "conversation:update"
CONVERSATION_REMOVED = "conversation:removed"
CONVERSATION_DELETED = "conversation:deleted"
MESSAGE_NEW = "message:new"
MESSAGE_DELIVERED = "message:delivered"
MESSAGE_READ = "message:read"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
NOTIFICATION_NEW = "notification:new"
ACK = "ack"
ERROR = "error"

# Client to server
AUTH_JOIN = "auth:join"
CONVERSATION_JOIN = "conversation:join"
CONVERSATION_LEAVE = "conversation:leave"
MESSAGE_SEND = "message:send"


def user_channel(user_id) -> str:
    return f"user:{user_id}"


def conversation_channel(conversation_id) -> str:
    return f"conversation:{conversation_id}"


class ClientIntent(BaseModel):
    """Inbound frame sent by a socket client."""

    model_config = ConfigDict(populate_by_name=True)

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    ack_id: str | None = Field(default=None, alias="ackId")


class ServerFrame(BaseModel):
    """Outbound frame pushed to socket clients."""

    event: str
    data: Any = None
