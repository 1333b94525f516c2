"""
Credit Ledger Service - Per-user balances and the immutable transaction log

Every balance change is a single conditional UPDATE on ``credit_accounts``
plus one ``credit_transactions`` row in the same transaction. The methods
here never commit; the calling operation commits or rolls back as a unit.
"""
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func

from app.core.config import settings
from app.core.exceptions import InsufficientFundsError, InvalidAmountError
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.db.compat import insert_ignore_conflict
from app.db.models.credit_account import CreditAccount
from app.db.models.credit_transaction import CreditTransaction, TransactionKind
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class CreditLedgerService:
    """Service for credit balances and ledger history"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox_service = OutboxService(db)

    async def get_or_create_account(self, user_id: str) -> bool:
        """
        Ensure the account exists; returns True when this call created it.

        Concurrent first actions race on the unique ``user_id``; only the
        inserting caller writes the welcome bonus transaction.
        """
        welcome = settings.WELCOME_BONUS_CREDITS
        now = utcnow()
        result = await self.db.execute(
            insert_ignore_conflict(
                self.db,
                CreditAccount.__table__,
                ["user_id"],
                {"user_id": user_id, "balance": welcome, "created_at": now, "updated_at": now},
            )
        )
        if result.rowcount != 1:
            return False

        self.db.add(
            CreditTransaction(
                user_id=user_id,
                amount=welcome,
                balance_after=welcome,
                kind=TransactionKind.WELCOME_BONUS,
                description="Welcome bonus",
                idempotency_key=f"welcome:{user_id}",
                created_at=now,
            )
        )
        await self.outbox_service.record_balance_change(user_id, welcome)
        logger.info(
            "Credit account created",
            extra_data={"user_id": user_id, "balance": welcome},
        )
        return True

    async def _read_balance(self, user_id: str) -> int:
        result = await self.db.execute(
            select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
        )
        return result.scalar_one()

    async def get_balance(self, user_id: str) -> int:
        """Current balance; creates and persists the account on first use"""
        created = await self.get_or_create_account(user_id)
        balance = await self._read_balance(user_id)
        if created:
            await self.db.commit()
        return balance

    async def find_transaction_by_key(self, idempotency_key: str) -> Optional[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def debit(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        description: str | None = None,
        related_spot_id: int | None = None,
        related_user_id: str | None = None,
        related_deal_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """
        Subtract ``amount`` credits; returns the new balance.

        Raises InsufficientFundsError when the balance is lower than
        ``amount``. Nothing is written in that case.
        """
        return await self._apply(
            user_id,
            -self._validate_amount(amount),
            kind,
            description=description,
            related_spot_id=related_spot_id,
            related_user_id=related_user_id,
            related_deal_id=related_deal_id,
            idempotency_key=idempotency_key,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        description: str | None = None,
        related_spot_id: int | None = None,
        related_user_id: str | None = None,
        related_deal_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """Add ``amount`` credits; returns the new balance"""
        return await self._apply(
            user_id,
            self._validate_amount(amount),
            kind,
            description=description,
            related_spot_id=related_spot_id,
            related_user_id=related_user_id,
            related_deal_id=related_deal_id,
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def _validate_amount(amount: int) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        return amount

    async def _apply(
        self,
        user_id: str,
        delta: int,
        kind: TransactionKind,
        *,
        description: str | None,
        related_spot_id: int | None,
        related_user_id: str | None,
        related_deal_id: int | None,
        idempotency_key: str | None,
    ) -> int:
        await self.get_or_create_account(user_id)

        if idempotency_key:
            existing = await self.find_transaction_by_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Ledger operation already applied",
                    extra_data={"user_id": user_id, "idempotency_key": idempotency_key},
                )
                return await self._read_balance(user_id)

        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(balance=CreditAccount.balance + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(CreditAccount.balance >= -delta)

        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            current = await self._read_balance(user_id)
            logger.info(
                "Debit rejected, insufficient credits",
                extra_data={"user_id": user_id, "balance": current, "required": -delta},
            )
            raise InsufficientFundsError(user_id, current, -delta)

        new_balance = await self._read_balance(user_id)
        self.db.add(
            CreditTransaction(
                user_id=user_id,
                amount=delta,
                balance_after=new_balance,
                kind=kind,
                description=description,
                related_spot_id=related_spot_id,
                related_user_id=related_user_id,
                related_deal_id=related_deal_id,
                idempotency_key=idempotency_key,
                created_at=utcnow(),
            )
        )
        await self.outbox_service.record_balance_change(user_id, new_balance)

        logger.info(
            "Ledger entry recorded",
            extra_data={
                "user_id": user_id,
                "amount": delta,
                "kind": kind.value,
                "balance_after": new_balance,
            },
        )
        return new_balance

    async def get_history(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Transactions for the user, newest first"""
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_ledger_sum(self, user_id: str) -> int:
        """Sum of all transaction amounts; equals the balance for a consistent ledger"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.user_id == user_id)
        )
        return int(result.scalar_one())
