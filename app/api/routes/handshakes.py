"""
Handshake API Routes
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user_id
from app.db.database import get_db
from app.db.models.handshake_deal import HandshakeStatus, CancelReason
from app.domain.services.handshake_service import HandshakeService

router = APIRouter()


class OfferRequest(BaseModel):
    spot_id: int
    departure_time: datetime | None = None


class DealResponse(BaseModel):
    id: int
    spot_id: int
    giver_id: str
    receiver_id: str | None
    status: HandshakeStatus
    latitude: float
    longitude: float
    departure_time: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: CancelReason | None

    class Config:
        from_attributes = True


class ConfirmResponse(BaseModel):
    status: HandshakeStatus
    completed: bool
    deal: DealResponse


@router.post(
    "",
    response_model=DealResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Offer the caller's spot for a handshake",
)
async def offer_handshake(
    data: OfferRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.offer(user_id, data.spot_id, data.departure_time)


@router.get(
    "",
    response_model=List[DealResponse],
    summary="Deals visible to the caller",
    description="Open offers from other users, plus the caller's own deals in progress.",
)
async def list_deals(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.list_visible(user_id)


@router.get(
    "/mine",
    response_model=Optional[DealResponse],
    summary="The caller's active deal, if any",
)
async def my_deal(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.get_my_deal(user_id)


@router.post("/{deal_id}/request", response_model=DealResponse, summary="Request an open offer")
async def request_deal(
    deal_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.request(deal_id, user_id)


@router.post("/{deal_id}/accept", response_model=DealResponse, summary="Accept the pending request")
async def accept_request(
    deal_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.accept(deal_id, user_id)


@router.post("/{deal_id}/decline", response_model=DealResponse, summary="Decline the pending request")
async def decline_request(
    deal_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.decline(deal_id, user_id)


@router.post(
    "/{deal_id}/confirm",
    response_model=ConfirmResponse,
    summary="Confirm the hand-over",
    description="The second confirmation completes the deal and pays both participants.",
)
async def confirm_deal(
    deal_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    result = await service.confirm(deal_id, user_id)
    return ConfirmResponse(
        status=result.status,
        completed=result.completed,
        deal=DealResponse.model_validate(result.deal),
    )


@router.post("/{deal_id}/cancel", response_model=DealResponse, summary="Cancel a deal")
async def cancel_deal(
    deal_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    service = HandshakeService(db)
    return await service.cancel(deal_id, user_id)
