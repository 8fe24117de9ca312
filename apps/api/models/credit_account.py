"""CreditAccount model: denormalized per-user credit balance."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """
    One balance row per user.

    ``balance`` includes ``frozen_balance``; the spendable amount is
    ``balance - frozen_balance``. Rows are only mutated by the ledger in
    services.credits.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("frozen_balance >= 0", name="ck_credit_accounts_frozen_non_negative"),
        CheckConstraint("balance - frozen_balance >= 0", name="ck_credit_accounts_available_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    frozen_balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")

    @property
    def available_balance(self) -> int:
        return int(self.balance or 0) - int(self.frozen_balance or 0)
