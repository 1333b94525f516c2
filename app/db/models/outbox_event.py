"""
Outbox Event Model - Transactional Outbox for the Realtime Change Feed
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from app.db.database import Base


class ChangeOperation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EventStatus(str, enum.Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxEvent(Base):
    """Row-level change written in the same transaction as the change itself"""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    table_name = Column(String(50), nullable=False)
    operation = Column(SQLEnum(ChangeOperation), nullable=False)
    row_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(EventStatus), default=EventStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=datetime.utcnow)
    published_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
