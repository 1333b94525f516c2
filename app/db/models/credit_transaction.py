"""
Credit Transaction Model - Immutable Ledger History
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Index

from app.db.database import Base


class TransactionKind(str, enum.Enum):
    WELCOME_BONUS = "welcome_bonus"
    PARKING_USED = "parking_used"
    SPOT_REPORTED = "spot_reported"
    HANDSHAKE_GIVER = "handshake_giver"
    HANDSHAKE_RECEIVER = "handshake_receiver"
    PURCHASE = "purchase"
    MEMBERSHIP_BONUS = "membership_bonus"


class CreditTransaction(Base):
    """Append-only ledger row; the sum of amounts per user equals the account balance"""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # Positive for credit, negative for debit
    balance_after = Column(Integer, nullable=False)
    kind = Column(SQLEnum(TransactionKind), nullable=False)
    description = Column(String(500), nullable=True)

    # Spots and deals may be deleted later; keep plain ids, no foreign keys
    related_spot_id = Column(Integer, nullable=True)
    related_user_id = Column(String(64), nullable=True)
    related_deal_id = Column(Integer, nullable=True)

    # Retried operations reuse the key and never apply twice
    idempotency_key = Column(String(128), unique=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )
