"""CreditTransaction model: append-only credit ledger entry."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("earn", "spend", "freeze", "unfreeze")
TRANSACTION_SOURCES = (
    "bonus",
    "checkin",
    "referral",
    "subscription",
    "purchase",
    "api_call",
    "admin",
    "social_share",
)


class CreditTransaction(Base):
    """
    Immutable ledger entry.

    ``amount`` is always a positive magnitude; ``transaction_type`` carries the
    direction. ``reference_id`` is unique across the whole table and is the
    idempotency key for every ledger write.
    """

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    reference_id = Column(String, nullable=False, unique=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
