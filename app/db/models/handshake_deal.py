"""
Handshake Deal Model - Direct Spot Transfer Between Two Users
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Enum as SQLEnum, Index, text

from app.db.database import Base


class HandshakeStatus(str, enum.Enum):
    OPEN = "open"
    PENDING_APPROVAL = "pending_approval"  # receiver requested, waiting for the giver
    ACCEPTED = "accepted"
    GIVER_CONFIRMED = "giver_confirmed"
    RECEIVER_CONFIRMED = "receiver_confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({HandshakeStatus.COMPLETED, HandshakeStatus.CANCELLED})
ACTIVE_STATUSES = tuple(s for s in HandshakeStatus if s not in TERMINAL_STATUSES)


class CancelReason(str, enum.Enum):
    GIVER = "giver"
    RECEIVER = "receiver"
    EXPIRED = "expired"


class HandshakeDeal(Base):
    """
    Handshake offer and its lifecycle.

    ``latitude``/``longitude`` snapshot the spot's location, so the deal
    outlives the spot row that settlement deletes.
    """

    __tablename__ = "handshake_deals"

    id = Column(Integer, primary_key=True, index=True)
    spot_id = Column(Integer, nullable=False, index=True)

    giver_id = Column(String(64), nullable=False, index=True)
    receiver_id = Column(String(64), nullable=True, index=True)

    status = Column(SQLEnum(HandshakeStatus), nullable=False, default=HandshakeStatus.OPEN, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    departure_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(SQLEnum(CancelReason), nullable=True)


# Enum columns store member names; at most one non-terminal deal per spot
_ACTIVE_STATUS_SQL = text(
    "status IN ({})".format(", ".join(f"'{s.name}'" for s in ACTIVE_STATUSES))
)

Index(
    "uq_handshake_deals_active_spot",
    HandshakeDeal.spot_id,
    unique=True,
    postgresql_where=_ACTIVE_STATUS_SQL,
    sqlite_where=_ACTIVE_STATUS_SQL,
)
