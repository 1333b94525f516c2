"""
Parking Service - User-facing spot operations

Each public method is one database transaction: the spot, the session, the
ledger entry and the change events commit together or not at all.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.exceptions import (
    AlreadyParkedError,
    NotFoundException,
    SpotNotHeldError,
    HandshakeInProgressError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.db.models.credit_transaction import TransactionKind
from app.db.models.handshake_deal import HandshakeDeal, ACTIVE_STATUSES
from app.db.models.parking_history import ParkingHistory, SessionEndReason
from app.db.models.parking_session import ParkingSession, SessionSource
from app.db.models.parking_spot import ParkingSpot
from app.domain.services.availability import (
    ProbabilityLevel,
    calculate_availability_probability,
    probability_level,
)
from app.domain.services.ledger_service import CreditLedgerService
from app.domain.services.parking_session_service import ParkingSessionService
from app.domain.services.spot_registry import SpotRegistry

logger = get_logger(__name__)


@dataclass
class ReportResult:
    spot_id: int
    balance: int
    duplicate: bool = False


@dataclass
class AvailableSpot:
    spot: ParkingSpot
    probability: int
    level: ProbabilityLevel


def _validate_location(latitude: float, longitude: float) -> None:
    if not -90 <= latitude <= 90:
        raise ValidationException("Latitude must be between -90 and 90", field="latitude")
    if not -180 <= longitude <= 180:
        raise ValidationException("Longitude must be between -180 and 180", field="longitude")


async def find_active_deal_for_spot(db: AsyncSession, spot_id: int) -> Optional[HandshakeDeal]:
    result = await db.execute(
        select(HandshakeDeal).where(
            HandshakeDeal.spot_id == spot_id,
            HandshakeDeal.status.in_(ACTIVE_STATUSES),
        )
    )
    return result.scalars().first()


class ParkingService:
    """Report, claim and release parking spots"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.registry = SpotRegistry(db)
        self.sessions = ParkingSessionService(db)
        self.ledger = CreditLedgerService(db)

    async def report_spot(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        idempotency_key: str | None = None,
    ) -> ReportResult:
        """
        Register a new spot occupied by the reporter and pay the reporting reward.

        A repeated ``idempotency_key`` returns the spot created by the first
        call without creating another one or paying twice.
        """
        _validate_location(latitude, longitude)
        ledger_key = f"report:{user_id}:{idempotency_key}" if idempotency_key else None

        if ledger_key:
            duplicate = await self._find_reported(user_id, ledger_key)
            if duplicate is not None:
                return duplicate

        try:
            spot = await self.registry.create_spot(latitude, longitude, reported_by=user_id)
            await self.sessions.open_session(
                user_id, spot.id, latitude, longitude, SessionSource.REPORTED
            )
            balance = await self.ledger.credit(
                user_id,
                settings.SPOT_REPORT_REWARD,
                TransactionKind.SPOT_REPORTED,
                description="Reported a new parking spot",
                related_spot_id=spot.id,
                idempotency_key=ledger_key,
            )
            spot_id = spot.id
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if ledger_key:
                # a concurrent retry with the same key committed first
                duplicate = await self._find_reported(user_id, ledger_key)
                if duplicate is not None:
                    return duplicate
            await self._raise_if_parked(user_id)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Spot reported",
            extra_data={"user_id": user_id, "spot_id": spot_id, "balance": balance},
        )
        return ReportResult(spot_id=spot_id, balance=balance)

    async def _find_reported(self, user_id: str, ledger_key: str) -> Optional[ReportResult]:
        existing = await self.ledger.find_transaction_by_key(ledger_key)
        if existing is None:
            return None
        balance = await self.ledger.get_balance(user_id)
        logger.info(
            "Duplicate spot report ignored",
            extra_data={"user_id": user_id, "spot_id": existing.related_spot_id},
        )
        return ReportResult(spot_id=existing.related_spot_id, balance=balance, duplicate=True)

    async def claim_spot(self, user_id: str, spot_id: int) -> ParkingSession:
        """
        Take an available spot; exactly one of several concurrent callers
        succeeds. A user who already occupies a spot cannot claim another.
        """
        try:
            spot = await self.registry.claim(spot_id)
            session = await self.sessions.open_session(
                user_id, spot.id, spot.latitude, spot.longitude, SessionSource.CLAIMED
            )
            await self.db.commit()
        except IntegrityError:
            # unique user_id on parking_sessions: a concurrent claim or report won
            await self.db.rollback()
            await self._raise_if_parked(user_id)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Spot claimed", extra_data={"user_id": user_id, "spot_id": spot_id})
        return session

    async def release_spot(self, user_id: str, spot_id: int) -> int:
        """
        Leave a spot normally: debit the release cost, make the spot available
        and close the caller's session. Returns the new balance.

        Raises InsufficientFundsError with nothing changed when the caller
        cannot pay.
        """
        now = utcnow()
        try:
            # serialises against a concurrent offer on the same spot
            await self.registry.lock_spot(spot_id)

            session = await self.sessions.get_user_session_for_spot(user_id, spot_id)
            if session is None:
                logger.warning(
                    "Release attempt on a spot the user does not hold",
                    extra_data={"user_id": user_id, "spot_id": spot_id},
                )
                raise SpotNotHeldError(spot_id, user_id)

            deal = await find_active_deal_for_spot(self.db, spot_id)
            if deal is not None:
                raise HandshakeInProgressError(spot_id, deal.id)

            balance = await self.ledger.debit(
                user_id,
                settings.PARKING_RELEASE_COST,
                TransactionKind.PARKING_USED,
                description="Released a parking spot",
                related_spot_id=spot_id,
            )
            await self.registry.release(spot_id, now=now)
            await self.sessions.end_session(session, SessionEndReason.RELEASED, now=now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Spot released",
            extra_data={"user_id": user_id, "spot_id": spot_id, "balance": balance},
        )
        return balance

    async def leave_handshake_session(self, user_id: str) -> ParkingHistory:
        """
        End a session received through a handshake before it expires.

        The handed-over spot no longer exists, so leaving is free and nothing
        becomes available. Sessions on a spot row go through ``release_spot``.
        """
        now = utcnow()
        try:
            session = await self.sessions.get_user_session(user_id)
            if session is None:
                raise NotFoundException("ParkingSession", user_id)
            if session.source != SessionSource.HANDSHAKE:
                raise ValidationException(
                    "Spot sessions are ended by releasing the spot",
                    field="spot_id",
                    details={"spot_id": session.spot_id},
                )

            entry = await self.sessions.end_session(session, SessionEndReason.RELEASED, now=now)
            if entry is None:
                raise NotFoundException("ParkingSession", user_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Handshake session left", extra_data={"user_id": user_id})
        return entry

    async def _raise_if_parked(self, user_id: str) -> None:
        current = await self.sessions.get_user_session(user_id)
        if current is not None:
            raise AlreadyParkedError(user_id, current.id, current.spot_id)

    async def list_available_spots(self, now: datetime | None = None) -> list[AvailableSpot]:
        """Available spots with the estimated chance each one is still free"""
        now = now or utcnow()
        spots = await self.registry.list_available()
        available = []
        for spot in spots:
            probability = calculate_availability_probability(spot.available_since or now, now)
            available.append(
                AvailableSpot(spot=spot, probability=probability, level=probability_level(probability))
            )
        return available
