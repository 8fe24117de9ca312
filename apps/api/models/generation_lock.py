"""GenerationLock model: per-user, per-asset-type mutex row."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


ASSET_TYPES = ("image", "video")


class GenerationLock(Base):
    """In-flight generation marker. The unique key is the lock."""

    __tablename__ = "generation_locks"
    __table_args__ = (
        UniqueConstraint("user_id", "asset_type", name="uq_generation_locks_user_asset"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_type = Column(String, nullable=False)
    request_id = Column(String, nullable=True)
    task_id = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="generation_locks")
