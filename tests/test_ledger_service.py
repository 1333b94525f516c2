"""
Tests for CreditLedgerService - app/domain/services/ledger_service.py

Covers:
- lazy account creation with the welcome bonus
- conditional debit (never below zero, nothing written on failure)
- credits and idempotency keys
- history ordering and the balance == sum(transactions) invariant
- change events for balance updates
"""
import pytest
from sqlalchemy import select, func

from app.core.exceptions import InsufficientFundsError, InvalidAmountError
from app.db.models.credit_account import CreditAccount
from app.db.models.credit_transaction import CreditTransaction, TransactionKind
from app.db.models.outbox_event import OutboxEvent
from app.domain.services.ledger_service import CreditLedgerService


async def _transaction_count(db, user_id: str) -> int:
    result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)
    )
    return result.scalar_one()


class TestAccountCreation:

    @pytest.mark.asyncio
    async def test_first_balance_read_creates_account_with_welcome_bonus(self, db_session):
        ledger = CreditLedgerService(db_session)

        balance = await ledger.get_balance("user-a")

        assert balance == 20
        history = await ledger.get_history("user-a")
        assert len(history) == 1
        assert history[0].kind == TransactionKind.WELCOME_BONUS
        assert history[0].amount == 20
        assert history[0].balance_after == 20

    @pytest.mark.asyncio
    async def test_account_created_only_once(self, db_session):
        ledger = CreditLedgerService(db_session)

        assert await ledger.get_or_create_account("user-a") is True
        await db_session.commit()
        assert await ledger.get_or_create_account("user-a") is False
        await db_session.commit()

        result = await db_session.execute(
            select(func.count(CreditAccount.id)).where(CreditAccount.user_id == "user-a")
        )
        assert result.scalar_one() == 1
        assert await _transaction_count(db_session, "user-a") == 1

    @pytest.mark.asyncio
    async def test_balance_read_persists_new_account(self, db_session, session_maker):
        ledger = CreditLedgerService(db_session)
        await ledger.get_balance("user-a")

        async with session_maker() as other:
            result = await other.execute(
                select(CreditAccount.balance).where(CreditAccount.user_id == "user-a")
            )
            assert result.scalar_one() == 20


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_decrements_and_records_negative_amount(self, db_session):
        ledger = CreditLedgerService(db_session)

        new_balance = await ledger.debit(
            "user-a", 2, TransactionKind.PARKING_USED, related_spot_id=7
        )
        await db_session.commit()

        assert new_balance == 18
        latest = (await ledger.get_history("user-a", limit=1))[0]
        assert latest.amount == -2
        assert latest.balance_after == 18
        assert latest.related_spot_id == 7

    @pytest.mark.asyncio
    async def test_debit_exact_balance_then_second_debit_fails(self, db_session, account_factory):
        await account_factory("user-a", balance=2)
        ledger = CreditLedgerService(db_session)

        assert await ledger.debit("user-a", 2, TransactionKind.PARKING_USED) == 0
        await db_session.commit()

        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)

        assert exc_info.value.details["balance"] == 0
        assert exc_info.value.details["required"] == 2
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_insufficient_funds_writes_nothing(self, db_session, account_factory):
        await account_factory("user-a", balance=1)
        ledger = CreditLedgerService(db_session)
        before = await _transaction_count(db_session, "user-a")

        with pytest.raises(InsufficientFundsError):
            await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)
        await db_session.rollback()

        assert await ledger.get_balance("user-a") == 1
        assert await _transaction_count(db_session, "user-a") == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    async def test_invalid_amounts_rejected(self, db_session, amount):
        ledger = CreditLedgerService(db_session)
        with pytest.raises(InvalidAmountError):
            await ledger.debit("user-a", amount, TransactionKind.PARKING_USED)


class TestCredit:

    @pytest.mark.asyncio
    async def test_credit_increments(self, db_session):
        ledger = CreditLedgerService(db_session)

        new_balance = await ledger.credit(
            "user-a",
            10,
            TransactionKind.HANDSHAKE_RECEIVER,
            related_user_id="user-b",
            related_deal_id=3,
        )
        await db_session.commit()

        assert new_balance == 30
        latest = (await ledger.get_history("user-a", limit=1))[0]
        assert latest.kind == TransactionKind.HANDSHAKE_RECEIVER
        assert latest.related_user_id == "user-b"
        assert latest.related_deal_id == 3

    @pytest.mark.asyncio
    async def test_idempotency_key_applies_once(self, db_session):
        ledger = CreditLedgerService(db_session)

        first = await ledger.credit(
            "user-a", 20, TransactionKind.HANDSHAKE_GIVER, idempotency_key="handshake:1:giver"
        )
        await db_session.commit()
        second = await ledger.credit(
            "user-a", 20, TransactionKind.HANDSHAKE_GIVER, idempotency_key="handshake:1:giver"
        )
        await db_session.commit()

        assert first == 40
        assert second == 40
        assert await _transaction_count(db_session, "user-a") == 2

    @pytest.mark.asyncio
    async def test_find_transaction_by_key(self, db_session):
        ledger = CreditLedgerService(db_session)
        await ledger.credit("user-a", 4, TransactionKind.SPOT_REPORTED, idempotency_key="k-1")
        await db_session.commit()

        found = await ledger.find_transaction_by_key("k-1")
        assert found is not None
        assert found.amount == 4
        assert await ledger.find_transaction_by_key("missing") is None


class TestConservation:

    @pytest.mark.asyncio
    async def test_balance_equals_sum_of_transactions(self, db_session):
        ledger = CreditLedgerService(db_session)
        await ledger.credit("user-a", 4, TransactionKind.SPOT_REPORTED)
        await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)
        await ledger.credit("user-a", 20, TransactionKind.HANDSHAKE_GIVER)
        await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)
        await db_session.commit()

        assert await ledger.get_balance("user-a") == 40
        assert await ledger.get_ledger_sum("user-a") == 40

    @pytest.mark.asyncio
    async def test_history_is_newest_first(self, db_session):
        ledger = CreditLedgerService(db_session)
        await ledger.credit("user-a", 4, TransactionKind.SPOT_REPORTED)
        await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)
        await db_session.commit()

        kinds = [tx.kind for tx in await ledger.get_history("user-a")]
        assert kinds == [
            TransactionKind.PARKING_USED,
            TransactionKind.SPOT_REPORTED,
            TransactionKind.WELCOME_BONUS,
        ]

    @pytest.mark.asyncio
    async def test_balance_changes_are_queued_on_change_feed(self, db_session):
        ledger = CreditLedgerService(db_session)
        await ledger.debit("user-a", 2, TransactionKind.PARKING_USED)
        await db_session.commit()

        result = await db_session.execute(
            select(OutboxEvent).where(OutboxEvent.table_name == "credit_accounts")
        )
        balances = [event.payload["balance"] for event in result.scalars().all()]
        assert balances == [20, 18]
