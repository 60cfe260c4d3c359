from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from .base import BaseModel


# Read-only projection of the feed's posts; only used for notification previews.
class Post(BaseModel):
    __tablename__ = "posts"

    author_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    caption = Column(Text, nullable=True)

    media = relationship(
        "MediaAsset",
        back_populates="post",
        order_by="MediaAsset.position",
        foreign_keys="MediaAsset.post_id",
    )
