"""CreditTransaction model: append-only credit grant history."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


class CreditTransaction(Base):
    """Immutable credit grant entry keyed by its source event id."""

    __tablename__ = "credit_transactions"
    __table_args__ = (UniqueConstraint("user_id", "position", name="uq_credit_transactions_user_position"),)

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("user_ledgers.user_id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    credits = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    ledger = relationship("UserLedger", back_populates="transactions")
