"""
Parking Session Model - Who Currently Occupies a Spot
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Enum as SQLEnum

from app.db.database import Base


class SessionSource(str, enum.Enum):
    REPORTED = "reported"
    CLAIMED = "claimed"
    HANDSHAKE = "handshake"  # granted on handshake completion; the spot row no longer exists


class ParkingSession(Base):
    """Active parking session, server-side record of the claimant of a spot"""

    __tablename__ = "parking_sessions"

    id = Column(Integer, primary_key=True, index=True)
    # one active session per user
    user_id = Column(String(64), unique=True, nullable=False, index=True)

    # NULL for handshake sessions; unique otherwise (one occupant per spot)
    spot_id = Column(Integer, unique=True, nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    source = Column(SQLEnum(SessionSource), nullable=False)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
