"""UserLedger model: per-user credit balance and profile."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserLedger(Base):
    """Per-user credit balance document, mutated only through versioned writes."""

    __tablename__ = "user_ledgers"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    total_credits = Column(Integer, nullable=False, default=0)
    transaction_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    transactions = relationship(
        "CreditTransaction",
        back_populates="ledger",
        cascade="save-update, merge",
        order_by="CreditTransaction.position",
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version}
