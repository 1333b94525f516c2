"""
Credit API Routes
"""
from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user_id
from app.db.database import get_db
from app.db.models.credit_transaction import TransactionKind
from app.domain.services.ledger_service import CreditLedgerService

router = APIRouter()


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class TransactionResponse(BaseModel):
    id: int
    amount: int
    balance_after: int
    kind: TransactionKind
    description: str | None
    related_spot_id: int | None
    related_user_id: str | None
    related_deal_id: int | None
    created_at: datetime

    class Config:
        from_attributes = True


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Current credit balance",
    description="Creates the account with the welcome bonus on first use.",
)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = CreditLedgerService(db)
    balance = await service.get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.get(
    "/transactions",
    response_model=List[TransactionResponse],
    summary="Credit transaction history, newest first",
)
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = CreditLedgerService(db)
    return await service.get_history(user_id, limit)
