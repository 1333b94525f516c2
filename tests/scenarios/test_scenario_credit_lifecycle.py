"""
Scenario 3 - a driver runs out of credits and earns them back

Flow:
1. A driver with no credits claims a spot (claiming is free)
2. Releasing fails with insufficient funds and changes nothing
3. Reporting another spot while parked is refused
4. After buying credits the release goes through, and the spot is open to everyone
5. Another driver claims it, and the first driver earns the report reward elsewhere
"""
import pytest
from sqlalchemy import select, func

from app.core.exceptions import AlreadyParkedError, HandshakeInProgressError, InsufficientFundsError
from app.db.models.credit_transaction import TransactionKind
from app.db.models.handshake_deal import HandshakeStatus
from app.db.models.parking_history import ParkingHistory, SessionEndReason
from app.domain.services.handshake_service import HandshakeService
from app.domain.services.ledger_service import CreditLedgerService
from app.domain.services.parking_service import ParkingService
from tests.scenarios.conftest import (
    assert_balance,
    assert_deal_status,
    assert_ledger_conserved,
    assert_spot_available,
)


async def _history_count(db, user_id: str) -> int:
    result = await db.execute(
        select(func.count(ParkingHistory.id)).where(ParkingHistory.user_id == user_id)
    )
    return result.scalar_one()


@pytest.mark.scenario
class TestCreditLifecycle:

    @pytest.mark.asyncio
    async def test_broke_driver_earns_the_release_cost(
        self, db_session, spot_factory, account_factory
    ) -> None:
        parking = ParkingService(db_session)
        await account_factory("broke", balance=0)
        spot = await spot_factory()
        spot_id = spot.id

        await parking.claim_spot("broke", spot.id)
        await assert_balance(db_session, "broke", 0)

        with pytest.raises(InsufficientFundsError):
            await parking.release_spot("broke", spot.id)

        await assert_spot_available(db_session, spot_id, available=False)
        assert await parking.sessions.get_user_session_for_spot("broke", spot_id) is not None
        assert await _history_count(db_session, "broke") == 0

        with pytest.raises(AlreadyParkedError):
            await parking.report_spot("broke", 52.0, 13.0)
        await assert_balance(db_session, "broke", 0)

        await CreditLedgerService(db_session).credit(
            "broke", 4, TransactionKind.PURCHASE, description="Bought credits"
        )
        await db_session.commit()

        balance = await parking.release_spot("broke", spot_id)
        assert balance == 2
        await assert_spot_available(db_session, spot_id)
        assert await _history_count(db_session, "broke") == 1

        await parking.claim_spot("next-driver", spot_id)
        await assert_spot_available(db_session, spot_id, available=False)

        reported = await parking.report_spot("broke", 52.0, 13.0)
        assert reported.balance == 6
        await assert_ledger_conserved(db_session)

    @pytest.mark.asyncio
    async def test_cancelled_offer_frees_the_spot_at_no_cost(self, db_session, spot_factory) -> None:
        parking = ParkingService(db_session)
        handshakes = HandshakeService(db_session)
        spot = await spot_factory(holder="giver")
        spot_id = spot.id

        deal = await handshakes.offer("giver", spot.id)
        deal_id = deal.id
        with pytest.raises(HandshakeInProgressError):
            await parking.release_spot("giver", spot_id)

        await handshakes.request(deal_id, "receiver")
        await handshakes.cancel(deal_id, "receiver")

        await assert_deal_status(db_session, deal_id, HandshakeStatus.CANCELLED)
        await assert_spot_available(db_session, spot_id)
        history = await db_session.execute(
            select(ParkingHistory.end_reason).where(ParkingHistory.user_id == "giver")
        )
        assert history.scalar_one() == SessionEndReason.OFFER_CANCELLED

        await parking.claim_spot("receiver", spot_id)
        assert await handshakes.get_my_deal("giver") is None
        assert await handshakes.get_my_deal("receiver") is None
        await assert_ledger_conserved(db_session)
