"""
Handshake Service - Direct spot transfer between a giver and a receiver

Lifecycle:
    open -> pending_approval -> accepted -> giver_confirmed | receiver_confirmed -> completed
    any non-terminal -> cancelled

Every transition is a conditional UPDATE keyed on (deal id, expected status),
resolved through the transition table in ``app.state_machine``. Entering
``completed`` settles the deal (credits, spot removal, session hand-over) in
the same transaction as the status change.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from app.core.config import settings
from app.core.exceptions import (
    AlreadyParkedError,
    DealNotFoundError,
    SpotNotFoundError,
    NotParticipantError,
    StaleStateError,
    SpotNotHeldError,
    HandshakeAlreadyActiveError,
    ParticipantBusyError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.timeutils import utcnow, to_naive_utc
from app.db.models.credit_transaction import TransactionKind
from app.db.models.handshake_deal import (
    HandshakeDeal,
    HandshakeStatus,
    CancelReason,
    ACTIVE_STATUSES,
)
from app.db.models.outbox_event import ChangeOperation
from app.db.models.parking_history import SessionEndReason
from app.db.models.parking_session import SessionSource
from app.domain.services.ledger_service import CreditLedgerService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.parking_service import find_active_deal_for_spot
from app.domain.services.parking_session_service import ParkingSessionService
from app.domain.services.spot_registry import SpotRegistry
from app.state_machine import (
    HandshakeEvent,
    ParticipantRole,
    role_of,
    is_role_allowed,
    next_status,
)

logger = get_logger(__name__)


def _in_active_deal(user_id: str):
    """EXISTS clause: ``user_id`` is the giver or receiver of a non-terminal deal"""
    other = aliased(HandshakeDeal)
    return (
        select(other.id)
        .where(
            other.status.in_(ACTIVE_STATUSES),
            or_(other.giver_id == user_id, other.receiver_id == user_id),
        )
        .exists()
    )


@dataclass
class ConfirmResult:
    status: HandshakeStatus
    completed: bool
    deal: HandshakeDeal


class HandshakeService:
    """Offer, negotiate, confirm and cancel handshake deals"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.registry = SpotRegistry(db)
        self.sessions = ParkingSessionService(db)
        self.ledger = CreditLedgerService(db)
        self.outbox_service = OutboxService(db)

    # ==================== Queries ====================

    async def get_deal(self, deal_id: int) -> Optional[HandshakeDeal]:
        result = await self.db.execute(
            select(HandshakeDeal)
            .where(HandshakeDeal.id == deal_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_deal(self, deal_id: int) -> HandshakeDeal:
        deal = await self.get_deal(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    async def get_my_deal(self, user_id: str) -> Optional[HandshakeDeal]:
        """The caller's single non-terminal deal, as giver or receiver"""
        result = await self.db.execute(
            select(HandshakeDeal)
            .where(
                HandshakeDeal.status.in_(ACTIVE_STATUSES),
                or_(HandshakeDeal.giver_id == user_id, HandshakeDeal.receiver_id == user_id),
            )
            .order_by(HandshakeDeal.created_at.desc())
        )
        return result.scalars().first()

    async def list_visible(self, user_id: str) -> list[HandshakeDeal]:
        """
        Open offers from other users, plus the caller's own deals that are
        past the open stage.
        """
        in_progress = [s for s in ACTIVE_STATUSES if s != HandshakeStatus.OPEN]
        result = await self.db.execute(
            select(HandshakeDeal)
            .where(
                or_(
                    and_(
                        HandshakeDeal.status == HandshakeStatus.OPEN,
                        HandshakeDeal.giver_id != user_id,
                    ),
                    and_(
                        HandshakeDeal.status.in_(in_progress),
                        or_(
                            HandshakeDeal.giver_id == user_id,
                            HandshakeDeal.receiver_id == user_id,
                        ),
                    ),
                )
            )
            .order_by(HandshakeDeal.created_at.desc())
        )
        return list(result.scalars().all())

    # ==================== Offer ====================

    async def offer(
        self,
        giver_id: str,
        spot_id: int,
        departure_time: datetime | None = None,
    ) -> HandshakeDeal:
        """Open a deal on a spot the giver currently occupies"""
        now = utcnow()
        if departure_time is not None:
            departure_time = to_naive_utc(departure_time)
            if departure_time < now:
                raise ValidationException(
                    "Departure time cannot be in the past",
                    field="departure_time",
                )

        try:
            spot = await self.registry.lock_spot(spot_id)

            session = await self.sessions.get_user_session_for_spot(giver_id, spot_id)
            if session is None:
                logger.warning(
                    "Handshake offer on a spot the user does not hold",
                    extra_data={"user_id": giver_id, "spot_id": spot_id},
                )
                raise SpotNotHeldError(spot_id, giver_id)

            existing = await find_active_deal_for_spot(self.db, spot_id)
            if existing is not None:
                raise HandshakeAlreadyActiveError(spot_id, existing.id)

            busy = await self.get_my_deal(giver_id)
            if busy is not None:
                raise ParticipantBusyError(giver_id, busy.id)

            deal = HandshakeDeal(
                spot_id=spot_id,
                giver_id=giver_id,
                receiver_id=None,
                status=HandshakeStatus.OPEN,
                latitude=spot.latitude,
                longitude=spot.longitude,
                departure_time=departure_time,
                created_at=now,
                updated_at=now,
            )
            self.db.add(deal)
            await self.db.flush()
            await self.outbox_service.record_deal_change(deal, ChangeOperation.INSERT)
            await self.db.commit()
        except IntegrityError:
            # partial unique index: another offer on this spot won the race
            await self.db.rollback()
            raise HandshakeAlreadyActiveError(spot_id)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Handshake offered",
            extra_data={"deal_id": deal.id, "spot_id": spot_id, "giver_id": giver_id},
        )
        return deal

    # ==================== Transitions ====================

    async def request(self, deal_id: int, user_id: str) -> HandshakeDeal:
        """
        Ask to take an open offer.

        The requester must not occupy a spot or take part in another active
        deal. The second condition is part of the conditional update, so two
        concurrent requests by one user on different offers cannot both win.
        """
        deal = await self.require_deal(deal_id)
        if user_id == deal.giver_id:
            raise ValidationException("Cannot request your own handshake offer", field="deal_id")

        target = next_status(deal.status, HandshakeEvent.REQUEST, ParticipantRole.OTHER)
        if target is None:
            raise StaleStateError(deal_id, deal.status.value, HandshakeStatus.OPEN.value)

        parked = await self.sessions.get_user_session(user_id)
        if parked is not None:
            raise AlreadyParkedError(user_id, parked.id, parked.spot_id)

        busy = await self.get_my_deal(user_id)
        if busy is not None:
            raise ParticipantBusyError(user_id, busy.id)

        try:
            return await self._apply_transition(
                deal,
                target,
                {"receiver_id": user_id},
                user_id,
                conditions=[~_in_active_deal(user_id)],
            )
        except StaleStateError:
            busy = await self.get_my_deal(user_id)
            if busy is not None:
                raise ParticipantBusyError(user_id, busy.id)
            raise

    async def accept(self, deal_id: int, user_id: str) -> HandshakeDeal:
        deal = await self.require_deal(deal_id)
        target = self._resolve(deal, HandshakeEvent.ACCEPT, user_id)
        return await self._apply_transition(deal, target, {}, user_id)

    async def decline(self, deal_id: int, user_id: str) -> HandshakeDeal:
        """Reject the pending request; the offer goes back to open"""
        deal = await self.require_deal(deal_id)
        target = self._resolve(deal, HandshakeEvent.DECLINE, user_id)
        return await self._apply_transition(deal, target, {"receiver_id": None}, user_id)

    async def confirm(self, deal_id: int, user_id: str) -> ConfirmResult:
        """
        Record the caller's confirmation that the hand-over happened.

        The second confirmation completes and settles the deal. Repeating a
        confirmation, or confirming a completed deal, returns the current
        state without side effects.
        """
        deal = await self.require_deal(deal_id)
        role = self._participant_role(deal, HandshakeEvent.CONFIRM, user_id)

        if deal.status == HandshakeStatus.COMPLETED:
            return ConfirmResult(status=deal.status, completed=True, deal=deal)
        if (deal.status, role) in (
            (HandshakeStatus.GIVER_CONFIRMED, ParticipantRole.GIVER),
            (HandshakeStatus.RECEIVER_CONFIRMED, ParticipantRole.RECEIVER),
        ):
            return ConfirmResult(status=deal.status, completed=False, deal=deal)

        target = next_status(deal.status, HandshakeEvent.CONFIRM, role)
        if target is None:
            raise StaleStateError(deal_id, deal.status.value)

        if target != HandshakeStatus.COMPLETED:
            deal = await self._apply_transition(deal, target, {}, user_id)
            return ConfirmResult(status=deal.status, completed=False, deal=deal)

        deal = await self._complete(deal)
        return ConfirmResult(status=deal.status, completed=True, deal=deal)

    async def cancel(self, deal_id: int, user_id: str) -> HandshakeDeal:
        """
        Cancel a non-terminal deal. If the giver still holds the spot it is
        released and becomes available to everyone.
        """
        deal = await self.require_deal(deal_id)
        role = self._participant_role(deal, HandshakeEvent.CANCEL, user_id)

        if deal.status == HandshakeStatus.CANCELLED:
            return deal

        target = next_status(deal.status, HandshakeEvent.CANCEL, role)
        if target is None:
            raise StaleStateError(deal_id, deal.status.value)

        reason = CancelReason.GIVER if role == ParticipantRole.GIVER else CancelReason.RECEIVER
        return await self._cancel(deal, reason, SessionEndReason.OFFER_CANCELLED, utcnow())

    async def expire_offer(self, deal: HandshakeDeal, now: datetime) -> HandshakeDeal:
        """Cancel an open offer that found no taker in time; commits on success"""
        return await self._cancel(
            deal, CancelReason.EXPIRED, SessionEndReason.OFFER_EXPIRED, now, expected=HandshakeStatus.OPEN
        )

    async def find_expired_offers(self, cutoff: datetime) -> list[HandshakeDeal]:
        result = await self.db.execute(
            select(HandshakeDeal).where(
                HandshakeDeal.status == HandshakeStatus.OPEN,
                HandshakeDeal.departure_time.is_not(None),
                HandshakeDeal.departure_time < cutoff,
            )
        )
        return list(result.scalars().all())

    # ==================== Internals ====================

    def _participant_role(self, deal: HandshakeDeal, event: HandshakeEvent, user_id: str) -> ParticipantRole:
        role = role_of(deal.giver_id, deal.receiver_id, user_id)
        if not is_role_allowed(event, role):
            required = "giver" if event in (HandshakeEvent.ACCEPT, HandshakeEvent.DECLINE) else "participant"
            logger.warning(
                "Handshake action by a non-participant",
                extra_data={
                    "deal_id": deal.id,
                    "user_id": user_id,
                    "event": event.value,
                    "role": role.value,
                },
            )
            raise NotParticipantError(deal.id, user_id, required)
        return role

    def _resolve(self, deal: HandshakeDeal, event: HandshakeEvent, user_id: str) -> HandshakeStatus:
        role = self._participant_role(deal, event, user_id)
        target = next_status(deal.status, event, role)
        if target is None:
            raise StaleStateError(deal.id, deal.status.value)
        return target

    async def _cas(
        self,
        deal_id: int,
        expected: HandshakeStatus,
        values: dict,
        conditions: list | None = None,
    ) -> HandshakeDeal:
        """Conditional status update; raises StaleStateError / DealNotFoundError on a lost race"""
        result = await self.db.execute(
            update(HandshakeDeal)
            .where(HandshakeDeal.id == deal_id, HandshakeDeal.status == expected, *(conditions or []))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.get_deal(deal_id)
            if current is None:
                raise DealNotFoundError(deal_id)
            raise StaleStateError(deal_id, current.status.value, expected.value)

        deal = await self.require_deal(deal_id)
        await self.outbox_service.record_deal_change(deal, ChangeOperation.UPDATE)
        return deal

    async def _apply_transition(
        self,
        deal: HandshakeDeal,
        target: HandshakeStatus,
        values: dict,
        user_id: str,
        conditions: list | None = None,
    ) -> HandshakeDeal:
        expected = deal.status
        try:
            updated = await self._cas(deal.id, expected, {"status": target, **values}, conditions)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Handshake transition",
            extra_data={
                "deal_id": updated.id,
                "user_id": user_id,
                "from": expected.value,
                "to": target.value,
            },
        )
        return updated

    async def _complete(self, deal: HandshakeDeal) -> HandshakeDeal:
        """Enter ``completed`` and settle, all in one transaction"""
        now = utcnow()
        deal_id = deal.id
        previous = deal.status
        try:
            deal = await self._cas(
                deal_id,
                previous,
                {"status": HandshakeStatus.COMPLETED, "completed_at": now},
            )
            await self._settle(deal, previous, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Handshake settlement failed, rolled back",
                extra_data={"deal_id": deal_id},
                exc_info=True,
            )
            raise

        logger.info(
            "Handshake completed",
            extra_data={
                "deal_id": deal.id,
                "giver_id": deal.giver_id,
                "receiver_id": deal.receiver_id,
            },
        )
        return deal

    async def _settle(self, deal: HandshakeDeal, previous: HandshakeStatus, now: datetime) -> None:
        """
        Pay both participants, remove the spot and move the session to the
        receiver. The giver must still hold the occupied spot; otherwise the
        whole settlement is refused with StaleStateError.
        """
        try:
            await self.registry.lock_spot(deal.spot_id)
        except SpotNotFoundError:
            self._log_lost_spot(deal, "spot no longer exists")
            raise StaleStateError(deal.id, previous.value)

        giver_session = await self.sessions.get_user_session_for_spot(deal.giver_id, deal.spot_id)
        if giver_session is None:
            self._log_lost_spot(deal, "giver no longer holds the spot")
            raise StaleStateError(deal.id, previous.value)

        await self.ledger.credit(
            deal.giver_id,
            settings.HANDSHAKE_GIVER_REWARD,
            TransactionKind.HANDSHAKE_GIVER,
            description="Handed over a parking spot",
            related_spot_id=deal.spot_id,
            related_user_id=deal.receiver_id,
            related_deal_id=deal.id,
            idempotency_key=f"handshake:{deal.id}:giver",
        )
        await self.ledger.credit(
            deal.receiver_id,
            settings.HANDSHAKE_RECEIVER_REWARD,
            TransactionKind.HANDSHAKE_RECEIVER,
            description="Received a parking spot",
            related_spot_id=deal.spot_id,
            related_user_id=deal.giver_id,
            related_deal_id=deal.id,
            idempotency_key=f"handshake:{deal.id}:receiver",
        )

        if not await self.registry.transfer_via_handshake(deal.spot_id):
            self._log_lost_spot(deal, "spot is no longer occupied")
            raise StaleStateError(deal.id, previous.value)
        await self.sessions.end_session(giver_session, SessionEndReason.HANDED_OVER, now=now)
        await self.sessions.open_session(
            deal.receiver_id,
            None,
            deal.latitude,
            deal.longitude,
            SessionSource.HANDSHAKE,
            expires_at=now + timedelta(minutes=settings.HANDSHAKE_SESSION_DEFAULT_MINUTES),
            now=now,
        )

    @staticmethod
    def _log_lost_spot(deal: HandshakeDeal, reason: str) -> None:
        logger.warning(
            "Handshake cannot settle",
            extra_data={
                "deal_id": deal.id,
                "spot_id": deal.spot_id,
                "giver_id": deal.giver_id,
                "reason": reason,
            },
        )

    async def _cancel(
        self,
        deal: HandshakeDeal,
        reason: CancelReason,
        end_reason: SessionEndReason,
        now: datetime,
        expected: HandshakeStatus | None = None,
    ) -> HandshakeDeal:
        try:
            updated = await self._cas(
                deal.id,
                expected or deal.status,
                {
                    "status": HandshakeStatus.CANCELLED,
                    "cancel_reason": reason,
                    "cancelled_at": now,
                },
            )
            released = await self._release_offered_spot(updated, end_reason, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Handshake cancelled",
            extra_data={
                "deal_id": updated.id,
                "reason": reason.value,
                "spot_released": released,
            },
        )
        return updated

    async def _release_offered_spot(
        self,
        deal: HandshakeDeal,
        end_reason: SessionEndReason,
        now: datetime,
    ) -> bool:
        """Release the spot if it still exists and the giver still holds it"""
        spot = await self.registry.get_spot(deal.spot_id)
        if spot is None:
            return False
        session = await self.sessions.get_user_session_for_spot(deal.giver_id, deal.spot_id)
        if session is None:
            return False

        await self.registry.release(deal.spot_id, now=now)
        await self.sessions.end_session(session, end_reason, now=now)
        return True
