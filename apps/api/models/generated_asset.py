"""GeneratedAsset model."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GeneratedAsset(Base):
    """Result record of one billable image/video generation."""

    __tablename__ = "generated_assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_type = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False)
    prompt = Column(String, nullable=False)
    status = Column(String, nullable=False, default="processing", index=True)
    request_id = Column(String, nullable=False, unique=True)
    task_id = Column(String, nullable=True, index=True)
    result_url = Column(String, nullable=True)
    credits_spent = Column(Integer, nullable=False, default=0)
    hold_reference_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="generated_assets")
