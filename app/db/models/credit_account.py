"""
Credit Account Model - Balance Tracking
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint

from app.db.database import Base


class CreditAccount(Base):
    """Current credit balance per user; mutated only together with a ledger row"""

    __tablename__ = "credit_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)

    balance = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )
