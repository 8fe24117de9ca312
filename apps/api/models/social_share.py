"""SocialShare model: a rewarded share of generated content."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SHARE_PLATFORMS = ("twitter", "facebook", "instagram", "linkedin", "pinterest", "tiktok", "other")


class SocialShare(Base):
    __tablename__ = "social_shares"
    __table_args__ = (
        UniqueConstraint("user_id", "reference_id", name="uq_social_shares_user_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_id = Column(String, nullable=True)
    platform = Column(String, nullable=False)
    share_url = Column(String, nullable=True)
    credits_earned = Column(Integer, nullable=False, default=0)
    # Caller-supplied id of the share (e.g. the platform post id).
    reference_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")
