"""
Database Models
"""
from app.db.models.credit_account import CreditAccount
from app.db.models.credit_transaction import CreditTransaction
from app.db.models.parking_spot import ParkingSpot
from app.db.models.parking_session import ParkingSession
from app.db.models.parking_history import ParkingHistory
from app.db.models.handshake_deal import HandshakeDeal
from app.db.models.outbox_event import OutboxEvent

__all__ = [
    "CreditAccount",
    "CreditTransaction",
    "ParkingSpot",
    "ParkingSession",
    "ParkingHistory",
    "HandshakeDeal",
    "OutboxEvent",
]
