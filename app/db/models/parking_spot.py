"""
Parking Spot Model - Public Spot Registry
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime

from app.db.database import Base


class ParkingSpot(Base):
    """
    A reported on-street spot.

    ``available`` is a single boolean so claiming is one conditional update;
    ``available_since`` is set when the spot is released and cleared on claim.
    """

    __tablename__ = "parking_spots"

    id = Column(Integer, primary_key=True, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    available = Column(Boolean, nullable=False, default=False, index=True)
    available_since = Column(DateTime, nullable=True, index=True)

    reported_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
