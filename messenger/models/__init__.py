# Makes 'models' a package and simplifies imports

from .base import BaseModel, metadata
from .conversation import Conversation, ConversationMember
from .media import MediaAsset
from .message import Message, MessageReceipt
from .notification import Notification
from .post import Post
from .user import User

__all__ = [
    "BaseModel",
    "metadata",
    "User",
    "Conversation",
    "ConversationMember",
    "Message",
    "MessageReceipt",
    "MediaAsset",
    "Notification",
    "Post",
]
