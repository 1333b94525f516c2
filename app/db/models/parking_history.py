"""
Parking History Model - Ended Sessions
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Enum as SQLEnum, Index

from app.db.database import Base


class SessionEndReason(str, enum.Enum):
    RELEASED = "released"
    HANDED_OVER = "handed_over"
    OFFER_CANCELLED = "offer_cancelled"
    OFFER_EXPIRED = "offer_expired"
    SESSION_EXPIRED = "session_expired"


class ParkingHistory(Base):
    """One row per finished parking session"""

    __tablename__ = "parking_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    spot_id = Column(Integer, nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    duration_minutes = Column(Integer, nullable=False, default=0)
    end_reason = Column(SQLEnum(SessionEndReason), nullable=False)

    __table_args__ = (
        Index("ix_parking_history_user_started", "user_id", "started_at"),
    )
