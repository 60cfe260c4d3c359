from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from .base import BaseModel


class MediaAsset(BaseModel):
    """A stored binary object, referenced by a message or a post."""

    __tablename__ = "media_assets"

    owner_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    key = Column(Text, unique=True, nullable=False)
    url = Column(Text, nullable=False)
    mime_type = Column(Text, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)
    message_id = Column(
        Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=True, index=True
    )
    post_id = Column(
        Uuid(as_uuid=True), ForeignKey("posts.id"), nullable=True, index=True
    )

    message = relationship(
        "Message", back_populates="attachments", foreign_keys=[message_id]
    )
    post = relationship("Post", back_populates="media", foreign_keys=[post_id])
