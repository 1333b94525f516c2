"""
Domain Services
"""
from app.domain.services.ledger_service import CreditLedgerService
from app.domain.services.spot_registry import SpotRegistry
from app.domain.services.parking_session_service import ParkingSessionService
from app.domain.services.parking_service import ParkingService
from app.domain.services.handshake_service import HandshakeService
from app.domain.services.sweeper_service import ExpirySweeper
from app.domain.services.outbox_service import OutboxService

__all__ = [
    "CreditLedgerService",
    "SpotRegistry",
    "ParkingSessionService",
    "ParkingService",
    "HandshakeService",
    "ExpirySweeper",
    "OutboxService",
]
